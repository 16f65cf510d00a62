"""
models.py

SQLAlchemy models for Series, Tag, Relationship and the per-user
personalization tables (ratings, tag votes, preferences).
"""
import uuid

from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Float, Text, UniqueConstraint, Index, JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import relationship
from tanuki.utils.timezone import utc_now

Base = declarative_base()

# JSONB on PostgreSQL (indexable path lookups), plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _new_id() -> str:
    return uuid.uuid4().hex


class Series(Base):
    """A cached anime or manga entry.

    Unique by ``url`` and by ``(provider, external_id)``. Provider enrichment
    (AniList id, streaming links, cached relations) lives in ``metadata_`` and
    is read and written through ``tanuki.schemas.SeriesMetadata``.
    """
    __tablename__ = "series"
    id = Column(String, primary_key=True, default=_new_id)
    provider = Column(String, nullable=False, index=True)
    media_type = Column(String, nullable=False, default="ANIME")  # 'ANIME' or 'MANGA'
    external_id = Column(String, nullable=False)
    url = Column(String, nullable=False, unique=True)
    title = Column(String, nullable=False, index=True)
    title_image = Column(String, nullable=True)
    description = Column(Text, nullable=False, default="")
    rating = Column(Float, nullable=True)  # 0-10
    age_rating = Column(String, nullable=True)
    languages = Column(JSON, nullable=False, default=list)
    genres = Column(JSON, nullable=False, default=list)
    content_advisory = Column(JSON, nullable=False, default=list)
    metadata_ = Column("metadata", JSONType, nullable=False, default=dict)
    fetched_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    tags = relationship("Tag", back_populates="series", cascade="all, delete-orphan", lazy="selectin")

    __table_args__ = (
        UniqueConstraint('provider', 'external_id', name='uq_series_provider_external_id'),
    )


class Tag(Base):
    __tablename__ = "tags"
    id = Column(String, primary_key=True, default=_new_id)
    series_id = Column(String, ForeignKey("series.id", ondelete="CASCADE"), nullable=False, index=True)
    value = Column(String, nullable=False, index=True)
    source = Column(String, nullable=False)  # genre | content | description | manual
    confidence = Column(Float, nullable=False, default=1.0)
    category = Column(String, nullable=True, index=True)

    series = relationship("Series", back_populates="tags")


class Relationship(Base):
    __tablename__ = "relationships"
    id = Column(String, primary_key=True, default=_new_id)
    from_series_id = Column(String, ForeignKey("series.id", ondelete="CASCADE"), nullable=False, index=True)
    to_series_id = Column(String, ForeignKey("series.id", ondelete="CASCADE"), nullable=False, index=True)
    similarity = Column(Float, nullable=True)
    shared_tags = Column(JSON, nullable=False, default=list)
    relation_type = Column(String, nullable=True)
    discovered_at = Column(DateTime(timezone=True), default=utc_now)

    __table_args__ = (
        UniqueConstraint('from_series_id', 'to_series_id', name='uq_relationship_from_to'),
    )


class User(Base):
    __tablename__ = "users"
    id = Column(String, primary_key=True, default=_new_id)
    username = Column(String, unique=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now)


class UserSeriesRating(Base):
    __tablename__ = "user_series_ratings"
    id = Column(String, primary_key=True, default=_new_id)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    series_id = Column(String, ForeignKey("series.id", ondelete="CASCADE"), nullable=False)
    rating = Column(Integer, nullable=False)  # 0-5, 0 = disliked
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (UniqueConstraint('user_id', 'series_id', name='uq_user_series_rating'),)


class UserTagVote(Base):
    __tablename__ = "user_tag_votes"
    id = Column(String, primary_key=True, default=_new_id)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    series_id = Column(String, ForeignKey("series.id", ondelete="CASCADE"), nullable=False)
    tag_value = Column(String, nullable=False)
    vote = Column(Integer, nullable=False)  # +1 or -1
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        UniqueConstraint('user_id', 'series_id', 'tag_value', name='uq_user_tag_vote'),
        Index('ix_user_tag_votes_user_tag', 'user_id', 'tag_value'),
    )


class UserPreference(Base):
    __tablename__ = "user_preferences"
    id = Column(String, primary_key=True, default=_new_id)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    key = Column(String, nullable=False)
    value = Column(JSON, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (UniqueConstraint('user_id', 'key', name='uq_user_preference_key'),)
