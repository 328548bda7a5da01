"""
Tests for video listing/detail query building, execution and shaping.
"""

import logging
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from bson import ObjectId
from pymongo.errors import AutoReconnect

from errors import NotFoundError, ValidationError
from video_queries import (
    build_detail_pipeline,
    build_list_pipeline,
    build_list_query,
    fetch_video_detail,
    join_owner_subscribers,
    list_videos,
    record_view,
    shape_owner,
    shape_video_detail,
)


def make_detail_record(likers=(), subscribers=(), owner=True):
    owner_id = ObjectId()
    record = {
        "_id": ObjectId(),
        "title": "Cooking pasta",
        "description": "Step by step",
        "video_url": "/static/videos/a.mp4",
        "thumbnail_url": "/static/thumbnails/a.jpg",
        "duration": 93.5,
        "views": 7,
        "is_published": True,
        "created_at": datetime(2025, 1, 15, tzinfo=timezone.utc),
        "updated_at": datetime(2025, 1, 16, tzinfo=timezone.utc),
        "likes": [{"_id": ObjectId(), "video": None, "liked_by": u} for u in likers],
        "owner": [],
    }
    if owner:
        record["owner"] = [
            {
                "_id": owner_id,
                "username": "chef",
                "avatar_url": "/static/avatars/chef.png",
                "email": "chef@example.com",
                "password_hash": "secret",
                "subscribers": [{"_id": ObjectId(), "subscriber": s} for s in subscribers],
            }
        ]
    return record


class TestBuildListQuery:
    """Test suite for build_list_query."""

    def test_defaults(self):
        q = build_list_query()

        assert q.filter == {}
        assert q.sort is None
        assert q.page == 1
        assert q.limit == 10
        assert q.skip == 0

    def test_skip_from_page_and_limit(self):
        q = build_list_query(page="3", limit="5")

        assert q.skip == 10
        assert q.limit == 5

    def test_title_query_is_case_insensitive_substring(self):
        q = build_list_query(query="cat")

        assert q.filter["title"] == {"$regex": "cat", "$options": "i"}

    def test_title_query_is_literal(self):
        """Regex metacharacters in the query are matched literally."""
        q = build_list_query(query="c++ (part 1)")

        assert q.filter["title"]["$regex"] == r"c\+\+\ \(part\ 1\)"

    def test_owner_filter(self):
        owner = ObjectId()

        q = build_list_query(user_id=str(owner))

        assert q.filter["owner"] == owner

    def test_invalid_owner_rejected(self):
        with pytest.raises(ValidationError):
            build_list_query(user_id="not-an-id")

    @pytest.mark.parametrize("page,limit", [("0", "10"), ("1", "0"), ("-2", "10"), ("x", "10"), ("1", "ten")])
    def test_invalid_paging_rejected(self, page, limit):
        with pytest.raises(ValidationError):
            build_list_query(page=page, limit=limit)

    def test_sort_ascending(self):
        assert build_list_query(sort_by="views", sort_type="asc").sort == {"views": 1, "_id": 1}

    @pytest.mark.parametrize("sort_type", ["desc", "DESC", "ascending", "", None])
    def test_sort_anything_else_descending(self, sort_type):
        assert build_list_query(sort_by="views", sort_type=sort_type).sort == {"views": -1, "_id": -1}

    def test_sort_breaks_ties_on_id(self):
        """The sort field comes first and _id second, so tied values keep a stable page order."""
        sort = build_list_query(sort_by="duration", sort_type="asc").sort

        assert list(sort.items()) == [("duration", 1), ("_id", 1)]

    def test_huge_page_rejected(self):
        """A window that would not fit a 64-bit integer is a validation error."""
        with pytest.raises(ValidationError):
            build_list_query(page=str(10**19), limit="10")

    def test_sort_alias(self):
        assert build_list_query(sort_by="createdAt", sort_type="asc").sort == {"created_at": 1, "_id": 1}

    def test_unknown_sort_field_rejected(self):
        with pytest.raises(ValidationError):
            build_list_query(sort_by="password_hash")


class TestBuildPipelines:
    """Test suite for the aggregation pipelines."""

    def test_list_pipeline_without_sort(self):
        stages = build_list_pipeline(build_list_query())

        assert [next(iter(s)) for s in stages] == ["$match", "$lookup", "$unwind", "$project", "$skip", "$limit"]

    def test_list_pipeline_sorts_before_window(self):
        stages = build_list_pipeline(build_list_query(page=2, limit=4, sort_by="title", sort_type="asc"))

        assert [next(iter(s)) for s in stages] == [
            "$match", "$lookup", "$unwind", "$project", "$sort", "$skip", "$limit"
        ]
        assert stages[4] == {"$sort": {"title": 1, "_id": 1}}
        assert stages[5] == {"$skip": 4}
        assert stages[6] == {"$limit": 4}

    def test_list_pipeline_projects_owner_summary_only(self):
        project = build_list_pipeline(build_list_query())[3]["$project"]

        owner_fields = {k for k in project if k.startswith("owner.")}
        assert owner_fields == {"owner._id", "owner.username", "owner.avatar_url"}

    def test_detail_pipeline_joins_likes_and_owner(self):
        video_id = ObjectId()

        stages = build_detail_pipeline(str(video_id))

        assert stages[0] == {"$match": {"_id": video_id}}
        assert stages[1]["$lookup"]["from"] == "like"
        assert stages[1]["$lookup"]["foreignField"] == "video"
        assert stages[2]["$lookup"]["from"] == "user"
        assert stages[2]["$lookup"]["as"] == "owner"

    def test_detail_pipeline_rejects_bad_id(self):
        with pytest.raises(ValidationError):
            build_detail_pipeline("12345")


class TestExecutor:
    """Test suite for running queries against the store."""

    def test_list_videos_returns_total_and_page(self, fake_db, collections):
        collections["video"].count_documents.return_value = 25
        collections["video"].aggregate.return_value = [{"_id": ObjectId(), "title": "a"}]
        q = build_list_query(query="a")

        total, videos = list_videos(fake_db, q)

        assert total == 25
        assert len(videos) == 1
        collections["video"].count_documents.assert_called_once_with(q.filter)

    def test_list_videos_empty_is_not_found(self, fake_db, collections):
        collections["video"].count_documents.return_value = 0
        collections["video"].aggregate.return_value = []

        with pytest.raises(NotFoundError) as exc_info:
            list_videos(fake_db, build_list_query(query="zzz"))

        assert exc_info.value.status_code == 404

    def test_fetch_detail_not_found(self, fake_db, collections):
        collections["video"].aggregate.return_value = []

        with pytest.raises(NotFoundError):
            fetch_video_detail(fake_db, str(ObjectId()))

    def test_fetch_detail_joins_owner_subscribers(self, fake_db, collections):
        record = make_detail_record()
        owner_id = record["owner"][0]["_id"]
        subs = [{"_id": ObjectId(), "subscriber": ObjectId()} for _ in range(2)]
        collections["video"].aggregate.return_value = [record]
        collections["subscription"].find.return_value = subs

        result = fetch_video_detail(fake_db, str(record["_id"]))

        assert result["owner"][0]["subscribers"] == subs
        collections["subscription"].find.assert_called_once_with({"channel": owner_id}, {"subscriber": 1})

    def test_join_owner_subscribers_without_owner(self, fake_db, collections):
        record = make_detail_record(owner=False)

        join_owner_subscribers(fake_db, record)

        collections["subscription"].find.assert_not_called()


class TestShapeVideoDetail:
    """Test suite for shape_video_detail."""

    def test_likes_include_viewer(self):
        viewer = ObjectId()
        record = make_detail_record(likers=[ObjectId(), viewer, ObjectId()])

        shaped = shape_video_detail(record, viewer)

        assert shaped["likesCount"] == 3
        assert shaped["isLiked"] is True

    def test_no_likes(self):
        shaped = shape_video_detail(make_detail_record(), ObjectId())

        assert shaped["likesCount"] == 0
        assert shaped["isLiked"] is False

    def test_viewer_as_string(self):
        viewer = ObjectId()
        shaped = shape_video_detail(make_detail_record(likers=[viewer]), str(viewer))

        assert shaped["isLiked"] is True

    def test_flags_false_without_viewer(self):
        record = make_detail_record(likers=[ObjectId()], subscribers=[ObjectId()])

        shaped = shape_video_detail(record, None)

        assert shaped["isLiked"] is False
        assert shaped["owner"]["isSubscribed"] is False

    def test_owner_subscribers(self):
        viewer = ObjectId()
        subscribers = [ObjectId() for _ in range(4)] + [viewer]

        shaped = shape_video_detail(make_detail_record(subscribers=subscribers), viewer)

        assert shaped["owner"]["subscribersCount"] == 5
        assert shaped["owner"]["isSubscribed"] is True

    def test_owner_not_subscribed(self):
        shaped = shape_video_detail(make_detail_record(subscribers=[ObjectId()] * 5), ObjectId())

        assert shaped["owner"]["subscribersCount"] == 5
        assert shaped["owner"]["isSubscribed"] is False

    def test_owner_collapsed_and_projected(self):
        shaped = shape_video_detail(make_detail_record(), ObjectId())

        assert isinstance(shaped["owner"], dict)
        assert set(shaped["owner"]) == {"_id", "username", "avatar_url", "subscribersCount", "isSubscribed"}

    def test_unresolved_owner(self):
        shaped = shape_video_detail(make_detail_record(owner=False), ObjectId())

        assert shaped["owner"] is None

    def test_join_arrays_do_not_leak(self):
        shaped = shape_video_detail(make_detail_record(likers=[ObjectId()]), ObjectId())

        assert "likes" not in shaped
        assert "subscribers" not in shaped["owner"]
        assert set(shaped) == {
            "_id", "title", "description", "video_url", "thumbnail_url", "duration",
            "created_at", "updated_at", "views", "is_published", "owner", "likesCount", "isLiked",
        }

    def test_shape_owner_none(self):
        assert shape_owner(None) is None


class TestRecordView:
    """Test suite for the post-read view recording."""

    def test_increments_views_and_appends_history(self, fake_db, collections):
        video_id, viewer = ObjectId(), ObjectId()

        record_view(fake_db, video_id, viewer)

        collections["video"].update_one.assert_called_once_with({"_id": video_id}, {"$inc": {"views": 1}})
        collections["user"].update_one.assert_called_once_with(
            {"_id": viewer}, {"$addToSet": {"watch_history": video_id}}
        )

    def test_no_history_without_viewer(self, fake_db, collections):
        record_view(fake_db, ObjectId(), None)

        collections["video"].update_one.assert_called_once()
        collections["user"].update_one.assert_not_called()

    def test_failures_are_isolated(self, fake_db, collections, caplog):
        """A failed view increment is logged and the history update still runs."""
        collections["video"].update_one.side_effect = AutoReconnect("connection lost")
        collections["user"].update_one.side_effect = AutoReconnect("connection lost")

        with caplog.at_level(logging.WARNING):
            record_view(fake_db, ObjectId(), ObjectId())

        assert collections["user"].update_one.call_count == 1
        assert "Failed to increment views" in caplog.text
        assert "Failed to update watch history" in caplog.text
