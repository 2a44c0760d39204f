"""
Append-only usage records.

Quota consumption is always derived by aggregating these rows over the current
month window; nothing ever updates or deletes them.
"""
from sqlalchemy import Column, DateTime, Index, Integer, String

from app.db.base import Base, utcnow


class VideoUpload(Base):
    __tablename__ = "user_video_uploads"
    __table_args__ = (
        Index("ix_user_video_uploads_user_uploaded", "user_id", "uploaded_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    video_id = Column(String(255), nullable=True)
    duration_seconds = Column(Integer, nullable=False, default=0)
    uploaded_at = Column(DateTime, nullable=False, default=utcnow)


class VocalExerciseCompletion(Base):
    __tablename__ = "vocal_exercise_completions"
    __table_args__ = (
        Index("ix_vocal_exercise_completions_user_completed", "user_id", "completed_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    video_id = Column(String(255), nullable=False)
    completed_at = Column(DateTime, nullable=False, default=utcnow)
