from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Path, Request, Response

from vidtube.api.deps import (
    REFRESH_COOKIE,
    apply_auth_cookies,
    clear_auth_cookies,
    client_key,
    get_current_user,
    get_optional_user,
    rate_limit,
)
from vidtube.api.schemas import (
    AuthResponse,
    ChannelProfileResponse,
    CommentCreateRequest,
    CommentResponse,
    Envelope,
    LoginRequest,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    RegisterRequest,
    ToggleResponse,
    TokenRefreshRequest,
    TweetCreateRequest,
    TweetResponse,
    UserResponse,
    VideoCreateRequest,
    VideoListResponse,
    VideoResponse,
)
from vidtube.logging import get_logger
from vidtube.service.errors import NotFoundError
from vidtube.service.interactions import ToggleResult, VideoStats
from vidtube.service.runtime import get_runtime
from vidtube.service.tokens import TokenPair
from vidtube.storage.models import Comment, Tweet, User, Video

logger = get_logger(__name__)

router = APIRouter(prefix="/v1", dependencies=[Depends(rate_limit("api"))])

_RESET_REQUESTED_MESSAGE = "if the account exists, a reset link has been sent"


def _user_to_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        handle=user.handle,
        email=user.email,
        fullname=user.fullname,
        avatar_url=user.avatar_url,
        created_at=user.created_at,
    )


def _auth_response(user: User, tokens: TokenPair) -> AuthResponse:
    return AuthResponse(
        user=_user_to_response(user),
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_type=tokens.token_type,
        access_expires_at=tokens.access_expires_at,
        refresh_expires_at=tokens.refresh_expires_at,
    )


def _video_to_response(video: Video, stats: Optional[VideoStats] = None) -> VideoResponse:
    return VideoResponse(
        id=video.id,
        owner_id=video.owner_id,
        title=video.title,
        description=video.description,
        video_url=video.video_url,
        thumbnail_url=video.thumbnail_url,
        duration_seconds=video.duration_seconds,
        views=video.views,
        created_at=video.created_at,
        like_count=stats.like_count if stats else None,
        is_liked=stats.is_liked if stats else None,
    )


def _toggle_to_response(result: ToggleResult) -> ToggleResponse:
    return ToggleResponse(
        target_id=result.target_id, kind=result.kind.value, active=result.active
    )


# users / auth
@router.post(
    "/users/register",
    response_model=Envelope,
    status_code=201,
    tags=["users"],
    dependencies=[Depends(rate_limit("auth"))],
)
async def register(body: RegisterRequest):
    """Create an account. Does not log the user in.

    Raises:
        409: If the handle or email is already taken
        429: If the auth rate limit is exceeded
    """
    runtime = get_runtime()
    user = await runtime.auth.register(
        handle=body.handle,
        email=body.email,
        password=body.password,
        fullname=body.fullname,
        avatar_url=body.avatar_url,
    )
    return Envelope(status="ok", data=_user_to_response(user))


@router.post(
    "/users/login",
    response_model=Envelope,
    tags=["users"],
    dependencies=[Depends(rate_limit("auth"))],
)
async def login(body: LoginRequest, response: Response):
    """Authenticate with handle or email and password.

    Sets the ``accessToken`` and ``refreshToken`` cookies and also returns
    both tokens in the body for non-browser clients.
    """
    runtime = get_runtime()
    user, tokens = await runtime.auth.login(body.identifier, body.password)
    apply_auth_cookies(response, tokens, runtime.settings)
    return Envelope(status="ok", data=_auth_response(user, tokens))


@router.post("/users/logout", response_model=Envelope, tags=["users"])
async def logout(response: Response, user: User = Depends(get_current_user)):
    runtime = get_runtime()
    await runtime.auth.invalidate(user.id)
    clear_auth_cookies(response, runtime.settings)
    return Envelope(status="ok", data={"message": "logged out"})


@router.post("/users/refresh-token", response_model=Envelope, tags=["users"])
async def refresh_token(
    request: Request,
    response: Response,
    body: Optional[TokenRefreshRequest] = None,
):
    runtime = get_runtime()
    incoming = (body.refresh_token if body else None) or request.cookies.get(REFRESH_COOKIE)
    user, tokens = await runtime.auth.refresh(incoming)
    apply_auth_cookies(response, tokens, runtime.settings)
    return Envelope(status="ok", data=_auth_response(user, tokens))


@router.post(
    "/users/forgot-password",
    response_model=Envelope,
    tags=["users"],
    dependencies=[Depends(rate_limit("auth"))],
)
async def forgot_password(body: PasswordResetRequest):
    runtime = get_runtime()
    await runtime.password_reset.request_reset(body.email)
    # identical answer whether or not the email is registered
    return Envelope(status="ok", data={"message": _RESET_REQUESTED_MESSAGE})


@router.post(
    "/users/reset-password/{token}",
    response_model=Envelope,
    tags=["users"],
    dependencies=[Depends(rate_limit("auth"))],
)
async def reset_password(
    body: PasswordResetConfirm,
    token: str = Path(..., min_length=1, max_length=256),
):
    runtime = get_runtime()
    await runtime.password_reset.complete_reset(token, body.new_password)
    return Envelope(status="ok", data={"message": "password has been reset"})


@router.post("/users/change-password", response_model=Envelope, tags=["users"])
async def change_password(
    body: PasswordChangeRequest, user: User = Depends(get_current_user)
):
    runtime = get_runtime()
    await runtime.auth.change_password(user.id, body.current_password, body.new_password)
    return Envelope(status="ok", data={"message": "password changed"})


@router.get("/users/current-user", response_model=Envelope, tags=["users"])
async def current_user(user: User = Depends(get_current_user)):
    return Envelope(status="ok", data=_user_to_response(user))


@router.get("/users/history", response_model=Envelope, tags=["users"])
async def watch_history(user: User = Depends(get_current_user)):
    runtime = get_runtime()
    videos = runtime.interactions.watch_history(user.id)
    return Envelope(
        status="ok",
        data=VideoListResponse(items=[_video_to_response(v) for v in videos]),
    )


@router.get("/users/c/{handle}", response_model=Envelope, tags=["users"])
async def channel_profile(
    handle: str = Path(..., min_length=1, max_length=64),
    viewer: Optional[User] = Depends(get_optional_user),
):
    runtime = get_runtime()
    profile = runtime.interactions.channel_profile(
        handle, viewer_id=viewer.id if viewer else None
    )
    return Envelope(
        status="ok",
        data=ChannelProfileResponse(
            channel=_user_to_response(profile.channel),
            subscriber_count=profile.subscriber_count,
            subscribed_to_count=profile.subscribed_to_count,
            is_subscribed=profile.is_subscribed,
        ),
    )


# videos
@router.post(
    "/videos",
    response_model=Envelope,
    status_code=201,
    tags=["videos"],
    dependencies=[Depends(rate_limit("upload"))],
)
async def create_video(body: VideoCreateRequest, user: User = Depends(get_current_user)):
    runtime = get_runtime()
    video = runtime.store.create_video(
        user.id,
        body.title,
        description=body.description,
        video_url=body.video_url,
        thumbnail_url=body.thumbnail_url,
        duration_seconds=body.duration_seconds,
    )
    logger.info("video_created", video_id=video.id, owner_id=user.id)
    return Envelope(status="ok", data=_video_to_response(video))


@router.get("/videos/{video_id}", response_model=Envelope, tags=["videos"])
async def get_video(
    request: Request,
    video_id: str = Path(..., min_length=1, max_length=64),
    viewer: Optional[User] = Depends(get_optional_user),
):
    """Fetch a video and count the view once per viewer (or per IP for guests)."""
    runtime = get_runtime()
    video = runtime.store.get_video(video_id)
    if not video:
        raise NotFoundError("video not found")
    viewer_id = viewer.id if viewer else None
    runtime.interactions.record_view(
        video,
        viewer_id=viewer_id,
        ip_address=None if viewer else client_key(request, runtime.settings),
    )
    stats = runtime.interactions.video_stats(video.id, viewer_id)
    return Envelope(status="ok", data=_video_to_response(video, stats))


@router.post(
    "/videos/{video_id}/comments",
    response_model=Envelope,
    status_code=201,
    tags=["comments"],
)
async def create_comment(
    body: CommentCreateRequest,
    video_id: str = Path(..., min_length=1, max_length=64),
    user: User = Depends(get_current_user),
):
    runtime = get_runtime()
    if not runtime.store.get_video(video_id):
        raise NotFoundError("video not found")
    comment: Comment = runtime.store.create_comment(video_id, user.id, body.content)
    return Envelope(
        status="ok",
        data=CommentResponse(
            id=comment.id,
            video_id=comment.video_id,
            owner_id=comment.owner_id,
            content=comment.content,
            created_at=comment.created_at,
        ),
    )


@router.post("/tweets", response_model=Envelope, status_code=201, tags=["tweets"])
async def create_tweet(body: TweetCreateRequest, user: User = Depends(get_current_user)):
    runtime = get_runtime()
    tweet: Tweet = runtime.store.create_tweet(user.id, body.content)
    return Envelope(
        status="ok",
        data=TweetResponse(
            id=tweet.id,
            owner_id=tweet.owner_id,
            content=tweet.content,
            created_at=tweet.created_at,
        ),
    )


# likes / subscriptions
@router.post("/likes/toggle/v/{video_id}", response_model=Envelope, tags=["likes"])
async def toggle_video_like(
    video_id: str = Path(..., min_length=1, max_length=64),
    user: User = Depends(get_current_user),
):
    result = get_runtime().interactions.toggle_like(user.id, "video", video_id)
    return Envelope(status="ok", data=_toggle_to_response(result))


@router.post("/likes/toggle/c/{comment_id}", response_model=Envelope, tags=["likes"])
async def toggle_comment_like(
    comment_id: str = Path(..., min_length=1, max_length=64),
    user: User = Depends(get_current_user),
):
    result = get_runtime().interactions.toggle_like(user.id, "comment", comment_id)
    return Envelope(status="ok", data=_toggle_to_response(result))


@router.post("/likes/toggle/t/{tweet_id}", response_model=Envelope, tags=["likes"])
async def toggle_tweet_like(
    tweet_id: str = Path(..., min_length=1, max_length=64),
    user: User = Depends(get_current_user),
):
    result = get_runtime().interactions.toggle_like(user.id, "tweet", tweet_id)
    return Envelope(status="ok", data=_toggle_to_response(result))


@router.get("/likes/videos", response_model=Envelope, tags=["likes"])
async def liked_videos(user: User = Depends(get_current_user)):
    videos = get_runtime().interactions.liked_videos(user.id)
    return Envelope(
        status="ok",
        data=VideoListResponse(items=[_video_to_response(v) for v in videos]),
    )


@router.post(
    "/subscriptions/c/{channel_id}", response_model=Envelope, tags=["subscriptions"]
)
async def toggle_subscription(
    channel_id: str = Path(..., min_length=1, max_length=64),
    user: User = Depends(get_current_user),
):
    result = get_runtime().interactions.toggle_subscription(user.id, channel_id)
    return Envelope(status="ok", data=_toggle_to_response(result))
