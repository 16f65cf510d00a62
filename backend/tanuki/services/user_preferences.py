"""
user_preferences.py

Per-user ratings, tag votes and key/value preferences feeding the
personalization scorer.
"""
import logging
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from tanuki.models import User, UserPreference, UserSeriesRating, UserTagVote
from tanuki.schemas import UserPreferences

logger = logging.getLogger(__name__)

AVAILABLE_SERVICES_KEY = "availableServices"


class UserPreferenceService:
    def __init__(self, db: Session):
        self.db = db

    def get_or_create_user(self, username: str) -> User:
        user = self.db.query(User).filter(User.username == username).first()
        if user is None:
            user = User(username=username)
            self.db.add(user)
            self.db.commit()
            self.db.refresh(user)
            logger.info(f"Created user '{username}' ({user.id})")
        return user

    # Ratings ---------------------------------------------------------------

    def rate_series(self, user_id: str, series_id: str, rating: int) -> UserSeriesRating:
        """Set a 0-5 star rating; 0 marks the series as disliked."""
        if not 0 <= rating <= 5:
            raise ValueError("Rating must be between 0 and 5")
        row = (
            self.db.query(UserSeriesRating)
            .filter(UserSeriesRating.user_id == user_id, UserSeriesRating.series_id == series_id)
            .first()
        )
        if row is None:
            row = UserSeriesRating(user_id=user_id, series_id=series_id)
            self.db.add(row)
        row.rating = rating
        self.db.commit()
        logger.debug(f"User {user_id} rated series {series_id}: {rating}")
        return row

    def get_rating(self, user_id: str, series_id: str) -> Optional[int]:
        row = (
            self.db.query(UserSeriesRating)
            .filter(UserSeriesRating.user_id == user_id, UserSeriesRating.series_id == series_id)
            .first()
        )
        return row.rating if row else None

    def delete_rating(self, user_id: str, series_id: str) -> bool:
        deleted = (
            self.db.query(UserSeriesRating)
            .filter(UserSeriesRating.user_id == user_id, UserSeriesRating.series_id == series_id)
            .delete()
        )
        self.db.commit()
        return bool(deleted)

    def get_ratings_map(self, user_id: str, series_ids: Optional[Iterable[str]] = None) -> Dict[str, int]:
        query = self.db.query(UserSeriesRating.series_id, UserSeriesRating.rating).filter(
            UserSeriesRating.user_id == user_id
        )
        if series_ids is not None:
            query = query.filter(UserSeriesRating.series_id.in_(list(series_ids)))
        return {series_id: rating for series_id, rating in query.all()}

    # Tag votes -------------------------------------------------------------

    def vote_on_tag(self, user_id: str, series_id: str, tag_value: str, vote: int) -> UserTagVote:
        if vote not in (1, -1):
            raise ValueError("Vote must be 1 or -1")
        row = (
            self.db.query(UserTagVote)
            .filter(
                UserTagVote.user_id == user_id,
                UserTagVote.series_id == series_id,
                UserTagVote.tag_value == tag_value,
            )
            .first()
        )
        if row is None:
            row = UserTagVote(user_id=user_id, series_id=series_id, tag_value=tag_value)
            self.db.add(row)
        row.vote = vote
        self.db.commit()
        return row

    def remove_tag_vote(self, user_id: str, series_id: str, tag_value: str) -> bool:
        deleted = (
            self.db.query(UserTagVote)
            .filter(
                UserTagVote.user_id == user_id,
                UserTagVote.series_id == series_id,
                UserTagVote.tag_value == tag_value,
            )
            .delete()
        )
        self.db.commit()
        return bool(deleted)

    def get_series_tag_votes(self, user_id: str, series_id: str) -> Dict[str, int]:
        rows = (
            self.db.query(UserTagVote.tag_value, UserTagVote.vote)
            .filter(UserTagVote.user_id == user_id, UserTagVote.series_id == series_id)
            .all()
        )
        return {tag: vote for tag, vote in rows}

    def get_tag_preferences(self, user_id: str) -> Dict[str, int]:
        """Votes summed per tag across every series the user voted on."""
        rows = (
            self.db.query(UserTagVote.tag_value, func.sum(UserTagVote.vote))
            .filter(UserTagVote.user_id == user_id)
            .group_by(UserTagVote.tag_value)
            .all()
        )
        return {tag: int(total) for tag, total in rows if total}

    # Key/value preferences -------------------------------------------------

    def set_preference(self, user_id: str, key: str, value: Any) -> None:
        row = (
            self.db.query(UserPreference)
            .filter(UserPreference.user_id == user_id, UserPreference.key == key)
            .first()
        )
        if row is None:
            row = UserPreference(user_id=user_id, key=key)
            self.db.add(row)
        row.value = value
        self.db.commit()

    def get_preference(self, user_id: str, key: str) -> Any:
        row = (
            self.db.query(UserPreference)
            .filter(UserPreference.user_id == user_id, UserPreference.key == key)
            .first()
        )
        return row.value if row else None

    def set_available_services(self, user_id: str, services: List[str]) -> None:
        self.set_preference(user_id, AVAILABLE_SERVICES_KEY, list(services))

    def get_available_services(self, user_id: str) -> List[str]:
        value = self.get_preference(user_id, AVAILABLE_SERVICES_KEY)
        return list(value) if isinstance(value, list) else []

    def load_preferences(self, user_id: str) -> UserPreferences:
        return UserPreferences(
            user_id=user_id,
            tag_preferences=self.get_tag_preferences(user_id),
            ratings=self.get_ratings_map(user_id),
            available_services=self.get_available_services(user_id),
        )
