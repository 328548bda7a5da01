"""
Database Schemas for the video sharing backend

Each Pydantic model maps to a MongoDB collection. The collection name is the lowercase of the class name.

Collections:
- User -> user
- Video -> video
- Comment -> comment
- Subscription -> subscription
- Like -> like

References between collections are stored as ObjectIds so they can be
joined with $lookup.
"""

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from typing import Any, Dict, List, Optional


class Document(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)


class User(Document):
    username: str = Field(..., min_length=3, max_length=30)
    email: EmailStr
    password_hash: str = Field(..., description="Bcrypt hash")
    avatar_url: Optional[str] = None
    watch_history: List[ObjectId] = Field(default_factory=list, description="Watched video ids, no duplicates")


class Video(Document):
    owner: ObjectId = Field(..., description="Owner user id")
    title: str = Field(..., min_length=1, max_length=120)
    description: str = Field(..., min_length=1)
    video_url: str
    thumbnail_url: str
    duration: float = Field(0.0, ge=0, description="Length in seconds")
    is_published: bool = False
    views: int = Field(0, ge=0)


class Comment(Document):
    video: ObjectId
    owner: ObjectId
    content: str = Field(..., min_length=1, max_length=500)


class Subscription(Document):
    subscriber: ObjectId = Field(..., description="The user who subscribes")
    channel: ObjectId = Field(..., description="The user whose channel is subscribed to")


class Like(Document):
    video: ObjectId
    liked_by: ObjectId


# -------------------- Queries --------------------

class VideoListQuery(Document):
    """Filter, sort and window for a video listing, ready for the pipeline."""
    filter: Dict[str, Any] = Field(default_factory=dict)
    sort: Optional[Dict[str, int]] = None
    page: int = Field(1, ge=1)
    limit: int = Field(10, ge=1)
    skip: int = Field(0, ge=0)
