from .database import init_db, session_scope, engine, SessionLocal
from .models import (
    Base, Resource, Review, ReviewInsight, Tag, ReviewTag, ReplyDraft,
    ReviewReply, VoiceIdentity, Job, Cursor, Lock, RunRecord
)

__all__ = [
    "init_db", "session_scope", "engine", "SessionLocal",
    "Base", "Resource", "Review", "ReviewInsight", "Tag", "ReviewTag",
    "ReplyDraft", "ReviewReply", "VoiceIdentity", "Job", "Cursor", "Lock",
    "RunRecord",
]
