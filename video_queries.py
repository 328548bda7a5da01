"""
Video listing and detail retrieval.

The work is split into small steps that can each be exercised against
plain dicts:

- build_list_query / build_list_pipeline / build_detail_pipeline assemble
  the filter, sort, window and $lookup joins.
- list_videos / fetch_video_detail / join_owner_subscribers run them
  against the store.
- shape_video_detail derives likesCount/isLiked and the owner's
  subscribersCount/isSubscribed and trims the record to public fields.
- record_view is the post-read view counter and watch history update.
"""
import logging
import re
from typing import Any, Dict, List, Optional, Tuple, Union

from bson import ObjectId
from pymongo.errors import PyMongoError

from errors import NotFoundError, ValidationError
from pagination import parse_page_params, skip_for
from schemas import VideoListQuery

logger = logging.getLogger(__name__)

IdLike = Union[ObjectId, str, None]

# Public sort keys, including the camelCase spellings clients tend to send
SORTABLE_FIELDS = {
    "title": "title",
    "duration": "duration",
    "views": "views",
    "created_at": "created_at",
    "createdAt": "created_at",
}

OWNER_SUMMARY_FIELDS = ("_id", "username", "avatar_url")

LIST_PROJECTION = {
    "_id": 1,
    "title": 1,
    "description": 1,
    "video_url": 1,
    "thumbnail_url": 1,
    "duration": 1,
    "created_at": 1,
    "views": 1,
    "is_published": 1,
    "owner._id": 1,
    "owner.username": 1,
    "owner.avatar_url": 1,
}

DETAIL_FIELDS = (
    "_id",
    "title",
    "description",
    "video_url",
    "thumbnail_url",
    "duration",
    "created_at",
    "updated_at",
    "views",
    "is_published",
)


def parse_object_id(value: IdLike, name: str = "id") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    if not value or not ObjectId.is_valid(value):
        raise ValidationError(f"Invalid {name}")
    return ObjectId(value)


# -------------------- Query Builder --------------------

def build_list_query(
    page: Union[str, int, None] = None,
    limit: Union[str, int, None] = None,
    query: Optional[str] = None,
    sort_by: Optional[str] = None,
    sort_type: Optional[str] = None,
    user_id: Optional[str] = None,
) -> VideoListQuery:
    page_number, page_size = parse_page_params(page, limit)

    filter_dict: Dict[str, Any] = {}
    if query:
        # Substring match: the text is taken literally, not as a pattern
        filter_dict["title"] = {"$regex": re.escape(query), "$options": "i"}
    if user_id:
        filter_dict["owner"] = parse_object_id(user_id, "user id")

    sort = None
    if sort_by:
        field = SORTABLE_FIELDS.get(sort_by)
        if field is None:
            raise ValidationError(f"Cannot sort by '{sort_by}'")
        direction = 1 if sort_type == "asc" else -1
        # _id breaks ties so consecutive pages never overlap
        sort = {field: direction, "_id": direction}

    return VideoListQuery(
        filter=filter_dict,
        sort=sort,
        page=page_number,
        limit=page_size,
        skip=skip_for(page_number, page_size),
    )


def build_list_pipeline(q: VideoListQuery) -> List[Dict[str, Any]]:
    pipeline: List[Dict[str, Any]] = [
        {"$match": q.filter},
        {"$lookup": {"from": "user", "localField": "owner", "foreignField": "_id", "as": "owner"}},
        {"$unwind": "$owner"},
        {"$project": LIST_PROJECTION},
    ]
    if q.sort:
        pipeline.append({"$sort": q.sort})
    pipeline.append({"$skip": q.skip})
    pipeline.append({"$limit": q.limit})
    return pipeline


def build_detail_pipeline(video_id: IdLike) -> List[Dict[str, Any]]:
    _id = parse_object_id(video_id, "video id")
    return [
        {"$match": {"_id": _id}},
        {"$lookup": {"from": "like", "localField": "_id", "foreignField": "video", "as": "likes"}},
        {"$lookup": {"from": "user", "localField": "owner", "foreignField": "_id", "as": "owner"}},
    ]


# -------------------- Aggregation Executor --------------------

def list_videos(db, q: VideoListQuery) -> Tuple[int, List[Dict[str, Any]]]:
    """Return (total matching videos, current page of videos)."""
    total = db["video"].count_documents(q.filter)
    videos = list(db["video"].aggregate(build_list_pipeline(q)))
    if not videos:
        raise NotFoundError("No videos found")
    return total, videos


def join_owner_subscribers(db, record: Dict[str, Any]) -> Dict[str, Any]:
    """Attach each joined owner's Subscription records as owner["subscribers"]."""
    for owner in record.get("owner") or []:
        owner["subscribers"] = list(
            db["subscription"].find({"channel": owner["_id"]}, {"subscriber": 1})
        )
    return record


def fetch_video_detail(db, video_id: IdLike) -> Dict[str, Any]:
    records = list(db["video"].aggregate(build_detail_pipeline(video_id)))
    if not records:
        raise NotFoundError("Video not found")
    return join_owner_subscribers(db, records[0])


# -------------------- Result Shaper --------------------

def _contains_id(ids, viewer_id: IdLike) -> bool:
    if viewer_id is None:
        return False
    return str(viewer_id) in {str(i) for i in ids if i is not None}


def shape_owner(owner: Optional[Dict[str, Any]], viewer_id: IdLike = None) -> Optional[Dict[str, Any]]:
    if not owner:
        return None
    subscribers = owner.get("subscribers") or []
    shaped = {field: owner.get(field) for field in OWNER_SUMMARY_FIELDS}
    shaped["subscribersCount"] = len(subscribers)
    shaped["isSubscribed"] = _contains_id((s.get("subscriber") for s in subscribers), viewer_id)
    return shaped


def shape_video_detail(record: Dict[str, Any], viewer_id: IdLike = None) -> Dict[str, Any]:
    likes = record.get("likes") or []
    owner = record.get("owner")
    if isinstance(owner, list):
        owner = owner[0] if owner else None

    shaped = {field: record.get(field) for field in DETAIL_FIELDS}
    shaped["owner"] = shape_owner(owner, viewer_id)
    shaped["likesCount"] = len(likes)
    shaped["isLiked"] = _contains_id((like.get("liked_by") for like in likes), viewer_id)
    return shaped


def record_view(db, video_id: IdLike, viewer_id: IdLike) -> None:
    """
    Count a view and remember it in the viewer's watch history.

    Runs after the response is produced. The two writes are independent
    store-level atomic updates; a failure in either is logged and dropped.
    """
    try:
        db["video"].update_one({"_id": ObjectId(str(video_id))}, {"$inc": {"views": 1}})
    except PyMongoError as e:
        logger.warning(f"Failed to increment views for video {video_id}: {e}")

    if viewer_id is None:
        return
    try:
        db["user"].update_one(
            {"_id": ObjectId(str(viewer_id))},
            {"$addToSet": {"watch_history": ObjectId(str(video_id))}},
        )
    except PyMongoError as e:
        logger.warning(f"Failed to update watch history for user {viewer_id}: {e}")
