"""
Response shapes shared by the forum routers.
"""

from dataclasses import asdict
from datetime import datetime
from typing import Any

from app.models.forum import ForumBoard, ForumMessage, ForumReport, ForumTopic
from app.modules.forum.polls import PollView


def iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def excerpt(body: str, length: int = 200) -> str:
    text = " ".join(body.split())
    return text if len(text) <= length else text[: length - 1].rstrip() + "…"


def board_to_dict(board: ForumBoard) -> dict[str, Any]:
    return {
        "id": board.id,
        "category_id": board.category_id,
        "name": board.name,
        "description": board.description,
        "is_locked": board.is_locked,
        "topic_count": board.topic_count,
        "message_count": board.message_count,
        "last_message": {
            "id": board.last_message_id,
            "time": iso(board.last_message_time),
            "poster_name": board.last_poster_name,
        }
        if board.last_message_id
        else None,
    }


def topic_to_dict(topic: ForumTopic) -> dict[str, Any]:
    return {
        "id": topic.id,
        "board_id": topic.board_id,
        "subject": topic.subject,
        "slug": topic.slug,
        "author": {"id": topic.author_id, "name": topic.author_name},
        "is_sticky": topic.is_sticky,
        "locked": topic.locked,
        "reply_count": topic.reply_count,
        "view_count": topic.view_count,
        "first_message_id": topic.first_message_id,
        "last_message": {
            "id": topic.last_message_id,
            "time": iso(topic.last_message_time),
            "poster_name": topic.last_poster_name,
        }
        if topic.last_message_id
        else None,
        "created_at": iso(topic.created_at),
    }


def message_to_dict(message: ForumMessage, post_number: int | None = None) -> dict[str, Any]:
    data = {
        "id": message.id,
        "topic_id": message.topic_id,
        "board_id": message.board_id,
        "subject": message.subject,
        "body": message.body,
        "author": {"id": message.author_id, "name": message.author_name},
        "is_first_message": message.is_first_message,
        "posted_time": iso(message.posted_time),
        "modified_time": iso(message.modified_time),
        "modified_name": message.modified_name,
    }
    if post_number is not None:
        data["post_number"] = post_number
    return data


def report_to_dict(report: ForumReport) -> dict[str, Any]:
    return {
        "id": report.id,
        "message_id": report.message_id,
        "topic_id": report.topic_id,
        "board_id": report.board_id,
        "reporter": {"id": report.reporter_id, "name": report.reporter_name},
        "comment": report.comment,
        "message": {
            "subject": report.message_subject,
            "body": report.message_body,
            "author": {
                "id": report.message_author_id,
                "name": report.message_author_name,
            },
            "posted_time": iso(report.message_posted_time),
        },
        "status": report.status.value,
        "created_at": iso(report.created_at),
        "closed_by": report.closed_by,
        "closed_at": iso(report.closed_at),
    }


def poll_to_dict(view: PollView) -> dict[str, Any]:
    data = asdict(view)
    data["expire_time"] = iso(view.expire_time)
    return data
