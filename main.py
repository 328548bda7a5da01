import logging
from datetime import datetime
from typing import Any, List, Optional

from bson import ObjectId
from fastapi import BackgroundTasks, Depends, FastAPI, File, Form, Header, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from passlib.context import CryptContext
from pydantic import BaseModel, EmailStr, Field
from pydantic import ValidationError as SchemaValidationError
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

import config
import database
from database import create_document, ensure_indexes, get_documents, toggle_document, utcnow
from errors import (
    ApiError,
    AuthenticationError,
    AuthorizationError,
    NotFoundError,
    UpstreamError,
    ValidationError,
)
from media import THUMBNAILS, VIDEOS, MediaStore
from pagination import page_indicators, parse_page_params, skip_for
from schemas import Comment, Like, Subscription, User, Video
from video_queries import (
    build_list_query,
    fetch_video_detail,
    list_videos,
    parse_object_id,
    record_view,
    shape_video_detail,
)

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

app = FastAPI()

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

media_store = MediaStore()
app.mount(config.STATIC_URL_PREFIX, StaticFiles(directory=media_store.root), name="static")


# -------------------- Responses & Errors --------------------

def to_str_id(value: Any) -> Any:
    """Make store documents JSON friendly: _id -> id, ObjectId -> str, datetime -> ISO."""
    if isinstance(value, dict):
        out = {}
        for k, v in value.items():
            out["id" if k == "_id" else k] = to_str_id(v)
        return out
    if isinstance(value, list):
        return [to_str_id(v) for v in value]
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def api_response(data: Any, message: str = "Success", status_code: int = 200) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "status_code": status_code,
            "data": to_str_id(data),
            "message": message,
            "success": status_code < 400,
        },
    )


def error_body(status_code: int, message: str, errors: Optional[List[Any]] = None) -> dict:
    return {
        "status_code": status_code,
        "data": None,
        "message": message,
        "success": False,
        "errors": errors or [],
    }


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    if isinstance(exc, ApiError):
        body = error_body(exc.status_code, exc.message, exc.errors)
    else:
        body = error_body(exc.status_code, str(exc.detail))
    return JSONResponse(status_code=exc.status_code, content=body, headers=getattr(exc, "headers", None))


def _field_errors(exc) -> list:
    return [{"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")} for e in exc.errors()]


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content=error_body(400, "Invalid request", _field_errors(exc)))


@app.exception_handler(SchemaValidationError)
async def schema_validation_handler(request: Request, exc: SchemaValidationError):
    return JSONResponse(status_code=400, content=error_body(400, "Invalid request", _field_errors(exc)))


@app.exception_handler(PyMongoError)
async def store_error_handler(request: Request, exc: PyMongoError):
    logger.exception(f"Database error on {request.method} {request.url.path}: {exc}")
    err = UpstreamError("A database error occurred. Please try again.")
    return JSONResponse(status_code=err.status_code, content=error_body(err.status_code, err.message))


# -------------------- Dependencies --------------------

def get_db():
    if database.db is None:
        raise UpstreamError("Database is not configured", status_code=503)
    return database.db


def get_media_store() -> MediaStore:
    return media_store


def _verify_user(db, x_user_id: str) -> ObjectId:
    user_id = parse_object_id(x_user_id, "user id")
    if not db["user"].find_one({"_id": user_id}, {"_id": 1}):
        raise AuthenticationError("Invalid user id")
    return user_id


def get_current_user_id(
    x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
    db=Depends(get_db),
) -> ObjectId:
    if not x_user_id:
        raise AuthenticationError("Missing X-User-Id header")
    return _verify_user(db, x_user_id)


def get_optional_user_id(
    x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
    db=Depends(get_db),
) -> Optional[ObjectId]:
    if not x_user_id:
        return None
    return _verify_user(db, x_user_id)


def discard_uploads(store: MediaStore, *urls: Optional[str]) -> None:
    """Remove files stored for a request whose database write failed."""
    for url in urls:
        if not url:
            continue
        try:
            store.delete(url)
        except UpstreamError:
            # The original failure is what the client needs to see
            logger.warning(f"Could not remove orphaned upload {url}")


def get_owned_video(db, video_id: str, user_id: ObjectId) -> dict:
    video = db["video"].find_one({"_id": parse_object_id(video_id, "video id")})
    if not video:
        raise NotFoundError("Video not found")
    if video.get("owner") != user_id:
        raise AuthorizationError("You are not the owner of this video")
    return video


@app.on_event("startup")
def create_indexes():
    if database.db is None:
        return
    try:
        ensure_indexes(database.db)
    except PyMongoError as e:
        logger.warning(f"Could not create indexes at startup: {e}")


# -------------------- Basic Routes --------------------
@app.get("/")
def read_root():
    return {"message": "Video Sharing Backend is running"}


@app.get("/test")
def check_database():
    info = {
        "backend": "running",
        "database_connected": False,
        "database_name": config.DATABASE_NAME,
        "collections": [],
    }
    try:
        if database.db is not None:
            info["collections"] = database.db.list_collection_names()
            info["database_connected"] = True
    except PyMongoError as e:
        info["error"] = str(e)[:100]
    return info


# -------------------- Auth --------------------
class RegisterRequest(BaseModel):
    username: str = Field(..., min_length=3, max_length=30)
    email: EmailStr
    password: str = Field(..., min_length=1)
    avatar_url: Optional[str] = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    return pwd_context.verify(password, hashed)


def public_user(user: dict) -> dict:
    return {k: v for k, v in user.items() if k != "password_hash"}


@app.post("/auth/register")
def register(payload: RegisterRequest, db=Depends(get_db)):
    username = payload.username.strip().lower()
    if db["user"].find_one({"email": payload.email}):
        raise ValidationError("Email already in use")
    if db["user"].find_one({"username": username}):
        raise ValidationError("Username already in use")

    user = User(
        username=username,
        email=payload.email,
        password_hash=hash_password(payload.password),
        avatar_url=payload.avatar_url,
    )
    try:
        user_id = create_document("user", user, database=db)
    except DuplicateKeyError:
        raise ValidationError("Email or username already in use")
    user_doc = {"_id": user_id, **user.model_dump()}
    return api_response(public_user(user_doc), "User registered successfully", 201)


@app.post("/auth/login")
def login(payload: LoginRequest, db=Depends(get_db)):
    user = db["user"].find_one({"email": payload.email})
    if not user or not verify_password(payload.password, user.get("password_hash", "")):
        raise AuthenticationError("Invalid credentials")
    # The client keeps the returned id and sends it back as X-User-Id
    return api_response(public_user(user), "Logged in successfully")


# -------------------- Videos --------------------
@app.get("/videos")
def get_all_videos(
    page: Optional[str] = None,
    limit: Optional[str] = None,
    query: Optional[str] = None,
    sort_by: Optional[str] = Query(default=None, alias="sortBy"),
    sort_type: Optional[str] = Query(default=None, alias="sortType"),
    user_id: Optional[str] = Query(default=None, alias="userId"),
    db=Depends(get_db),
):
    q = build_list_query(page=page, limit=limit, query=query, sort_by=sort_by, sort_type=sort_type, user_id=user_id)
    total, videos = list_videos(db, q)
    data = {"totalVideos": total, **page_indicators(total, q.page, q.limit), "videos": videos}
    return api_response(data, "Videos fetched successfully")


@app.post("/videos")
async def publish_video(
    title: str = Form(...),
    description: str = Form(...),
    video_file: UploadFile = File(...),
    thumbnail: UploadFile = File(...),
    user_id: ObjectId = Depends(get_current_user_id),
    db=Depends(get_db),
    store: MediaStore = Depends(get_media_store),
):
    if not title.strip() or not description.strip():
        raise ValidationError("All fields are required")
    if video_file.content_type and not video_file.content_type.startswith("video/"):
        raise ValidationError("Only video files are allowed")

    uploaded_video = await store.save(video_file, VIDEOS)
    try:
        uploaded_thumb = await store.save(thumbnail, THUMBNAILS)
    except UpstreamError:
        discard_uploads(store, uploaded_video["url"])
        raise

    try:
        video = Video(
            owner=user_id,
            title=title.strip(),
            description=description.strip(),
            video_url=uploaded_video["url"],
            thumbnail_url=uploaded_thumb["url"],
            duration=uploaded_video["duration"],
        )
        video_id = create_document("video", video, database=db)
    except (PyMongoError, SchemaValidationError):
        discard_uploads(store, uploaded_video["url"], uploaded_thumb["url"])
        raise
    return api_response({"_id": video_id, **video.model_dump()}, "Video published successfully", 201)


@app.get("/videos/{video_id}")
def get_video_by_id(
    video_id: str,
    background_tasks: BackgroundTasks,
    viewer_id: ObjectId = Depends(get_current_user_id),
    db=Depends(get_db),
):
    record = fetch_video_detail(db, video_id)
    video = shape_video_detail(record, viewer_id)
    background_tasks.add_task(record_view, db, video["_id"], viewer_id)
    return api_response(video, "Video fetched successfully")


@app.patch("/videos/{video_id}")
async def update_video(
    video_id: str,
    title: str = Form(...),
    description: str = Form(...),
    thumbnail: Optional[UploadFile] = File(None),
    user_id: ObjectId = Depends(get_current_user_id),
    db=Depends(get_db),
    store: MediaStore = Depends(get_media_store),
):
    if not title.strip() or not description.strip():
        raise ValidationError("title and description are required")
    video = get_owned_video(db, video_id, user_id)

    updates = {"title": title.strip(), "description": description.strip(), "updated_at": utcnow()}
    if thumbnail is not None and thumbnail.filename:
        updates["thumbnail_url"] = (await store.save(thumbnail, THUMBNAILS))["url"]

    try:
        updated = db["video"].find_one_and_update(
            {"_id": video["_id"]},
            {"$set": updates},
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            raise NotFoundError("Video not found")
    except (PyMongoError, NotFoundError):
        discard_uploads(store, updates.get("thumbnail_url"))
        raise
    if "thumbnail_url" in updates and video.get("thumbnail_url"):
        store.delete(video["thumbnail_url"])
    return api_response(updated, "Video updated successfully")


@app.delete("/videos/{video_id}")
def delete_video(
    video_id: str,
    user_id: ObjectId = Depends(get_current_user_id),
    db=Depends(get_db),
    store: MediaStore = Depends(get_media_store),
):
    video = get_owned_video(db, video_id, user_id)

    for url in (video.get("video_url"), video.get("thumbnail_url")):
        if url:
            store.delete(url)

    db["video"].delete_one({"_id": video["_id"]})
    db["like"].delete_many({"video": video["_id"]})
    db["comment"].delete_many({"video": video["_id"]})
    logger.info(f"Deleted video {video['_id']} and its likes/comments")
    return api_response({"id": video["_id"]}, "Video deleted successfully")


@app.patch("/videos/{video_id}/toggle-publish")
def toggle_publish_status(
    video_id: str,
    user_id: ObjectId = Depends(get_current_user_id),
    db=Depends(get_db),
):
    video = get_owned_video(db, video_id, user_id)
    updated = db["video"].find_one_and_update(
        {"_id": video["_id"], "owner": user_id},
        [{"$set": {"is_published": {"$not": ["$is_published"]}, "updated_at": utcnow()}}],
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise NotFoundError("Video not found")
    is_published = bool(updated.get("is_published"))
    message = "Video published successfully" if is_published else "Video unpublished successfully"
    return api_response({"is_published": is_published}, message)


# -------------------- Likes --------------------
@app.post("/videos/{video_id}/like")
def toggle_video_like(
    video_id: str,
    user_id: ObjectId = Depends(get_current_user_id),
    db=Depends(get_db),
):
    vid = parse_object_id(video_id, "video id")
    if not db["video"].find_one({"_id": vid}, {"_id": 1}):
        raise NotFoundError("Video not found")

    key = {"video": vid, "liked_by": user_id}
    is_liked = toggle_document("like", key, Like(**key), database=db)

    likes_count = db["like"].count_documents({"video": vid})
    return api_response(
        {"video_id": vid, "likesCount": likes_count, "isLiked": is_liked},
        "Video liked" if is_liked else "Like removed",
    )


# -------------------- Comments --------------------
class CommentRequest(BaseModel):
    content: str = Field(..., min_length=1, max_length=500)


def build_comment_pipeline(video_id: ObjectId, skip: int, limit: int) -> list:
    return [
        {"$match": {"video": video_id}},
        {"$sort": {"created_at": -1}},
        {"$skip": skip},
        {"$limit": limit},
        {"$lookup": {"from": "user", "localField": "owner", "foreignField": "_id", "as": "owner"}},
        {"$unwind": "$owner"},
        {
            "$project": {
                "content": 1,
                "video": 1,
                "created_at": 1,
                "updated_at": 1,
                "owner._id": 1,
                "owner.username": 1,
                "owner.avatar_url": 1,
            }
        },
    ]


def get_owned_comment(db, comment_id: str, user_id: ObjectId) -> dict:
    comment = db["comment"].find_one({"_id": parse_object_id(comment_id, "comment id")})
    if not comment:
        raise NotFoundError("Comment not found")
    if comment.get("owner") != user_id:
        raise AuthorizationError("You are not the owner of this comment")
    return comment


@app.get("/comments/{video_id}")
def get_video_comments(
    video_id: str,
    page: Optional[str] = None,
    limit: Optional[str] = None,
    db=Depends(get_db),
):
    vid = parse_object_id(video_id, "video id")
    page_number, page_size = parse_page_params(page, limit)
    total = db["comment"].count_documents({"video": vid})
    comments = list(db["comment"].aggregate(build_comment_pipeline(vid, skip_for(page_number, page_size), page_size)))
    data = {"totalComments": total, **page_indicators(total, page_number, page_size), "comments": comments}
    return api_response(data, "Comments fetched successfully")


@app.post("/comments/{video_id}")
def add_comment(
    video_id: str,
    payload: CommentRequest,
    user_id: ObjectId = Depends(get_current_user_id),
    db=Depends(get_db),
):
    vid = parse_object_id(video_id, "video id")
    if not payload.content.strip():
        raise ValidationError("Comment content is required")
    if not db["video"].find_one({"_id": vid}, {"_id": 1}):
        raise NotFoundError("Video not found")

    comment = Comment(video=vid, owner=user_id, content=payload.content.strip())
    comment_id = create_document("comment", comment, database=db)
    return api_response({"_id": comment_id, **comment.model_dump()}, "Comment added successfully", 201)


@app.patch("/comments/c/{comment_id}")
def update_comment(
    comment_id: str,
    payload: CommentRequest,
    user_id: ObjectId = Depends(get_current_user_id),
    db=Depends(get_db),
):
    if not payload.content.strip():
        raise ValidationError("Comment content is required")
    comment = get_owned_comment(db, comment_id, user_id)
    updated = db["comment"].find_one_and_update(
        {"_id": comment["_id"]},
        {"$set": {"content": payload.content.strip(), "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise NotFoundError("Comment not found")
    return api_response(updated, "Comment updated successfully")


@app.delete("/comments/c/{comment_id}")
def delete_comment(
    comment_id: str,
    user_id: ObjectId = Depends(get_current_user_id),
    db=Depends(get_db),
):
    comment = get_owned_comment(db, comment_id, user_id)
    db["comment"].delete_one({"_id": comment["_id"]})
    return api_response({"id": comment["_id"]}, "Comment deleted successfully")


# -------------------- Subscriptions & Channel --------------------
@app.post("/channels/{channel_id}/subscribe")
def toggle_subscription(
    channel_id: str,
    user_id: ObjectId = Depends(get_current_user_id),
    db=Depends(get_db),
):
    channel = parse_object_id(channel_id, "channel id")
    if channel == user_id:
        raise ValidationError("Cannot subscribe to yourself")
    if not db["user"].find_one({"_id": channel}, {"_id": 1}):
        raise NotFoundError("Channel not found")

    key = {"channel": channel, "subscriber": user_id}
    is_subscribed = toggle_document("subscription", key, Subscription(**key), database=db)

    sub_count = db["subscription"].count_documents({"channel": channel})
    return api_response(
        {"channel_id": channel, "subscribersCount": sub_count, "isSubscribed": is_subscribed},
        "Subscribed" if is_subscribed else "Unsubscribed",
    )


@app.get("/channels/{channel_id}")
def get_channel(
    channel_id: str,
    viewer_id: Optional[ObjectId] = Depends(get_optional_user_id),
    db=Depends(get_db),
):
    channel = parse_object_id(channel_id, "channel id")
    user = db["user"].find_one({"_id": channel}, {"password_hash": 0, "email": 0, "watch_history": 0})
    if not user:
        raise NotFoundError("Channel not found")

    sub_count = db["subscription"].count_documents({"channel": channel})
    is_subscribed = False
    if viewer_id is not None:
        is_subscribed = db["subscription"].find_one({"channel": channel, "subscriber": viewer_id}) is not None
    videos = list(db["video"].find({"owner": channel}).sort("created_at", -1))

    payload = {**user, "subscribersCount": sub_count, "isSubscribed": is_subscribed, "videos": videos}
    return api_response(payload, "Channel fetched successfully")


# -------------------- Watch History --------------------
@app.get("/users/me/history")
def get_watch_history(
    user_id: ObjectId = Depends(get_current_user_id),
    db=Depends(get_db),
):
    user = db["user"].find_one({"_id": user_id}, {"watch_history": 1})
    history = (user or {}).get("watch_history") or []
    by_id = {v["_id"]: v for v in get_documents("video", {"_id": {"$in": history}}, database=db)}
    # Keep history order; videos deleted since are skipped
    videos = [
        {
            "_id": v["_id"],
            "title": v.get("title"),
            "thumbnail_url": v.get("thumbnail_url"),
            "duration": v.get("duration"),
            "views": v.get("views", 0),
            "owner": v.get("owner"),
        }
        for v in (by_id.get(vid) for vid in history)
        if v is not None
    ]
    return api_response(videos, "Watch history fetched successfully")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
