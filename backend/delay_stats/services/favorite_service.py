"""Favourite route registration, the core's only write-facing user boundary."""

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from delay_stats.models.alert import Favorite
from delay_stats.schemas.stats import FavoriteRequest

logger = structlog.get_logger(__name__)


class FavoriteService:
    """Service for managing route favourites."""

    def __init__(self, db: AsyncSession) -> None:
        """
        Initialize the favourite service.

        Args:
            db: Database session
        """
        self.db = db

    async def _get_favorite(self, request: FavoriteRequest) -> Favorite | None:
        result = await self.db.execute(
            select(Favorite).where(
                Favorite.user_id == request.user_id,
                Favorite.route_number == request.route_number,
            )
        )
        return result.scalar_one_or_none()

    async def register_favorite(self, request: FavoriteRequest) -> Favorite:
        """
        Create or update a user's favourite for a route number.

        Thresholds are validated by FavoriteRequest: negative delay thresholds
        never reach this method.

        Args:
            request: Validated favourite request

        Returns:
            The stored favourite (committed)
        """
        favorite = await self._get_favorite(request)
        created = favorite is None
        if favorite is None:
            favorite = Favorite(user_id=request.user_id, route_number=request.route_number)
            self.db.add(favorite)

        favorite.alert_on_railway_works = request.alert_on_railway_works
        favorite.alert_on_delay_minutes = request.alert_on_delay_minutes

        try:
            await self.db.commit()
        except IntegrityError:
            # Concurrent registration of the same (user, route number)
            await self.db.rollback()
            favorite = await self._get_favorite(request)
            if favorite is None:
                raise
            favorite.alert_on_railway_works = request.alert_on_railway_works
            favorite.alert_on_delay_minutes = request.alert_on_delay_minutes
            await self.db.commit()
            created = False

        await self.db.refresh(favorite)
        logger.info(
            "favorite_registered",
            user_id=str(request.user_id),
            route_number=request.route_number,
            created=created,
            alert_on_delay_minutes=request.alert_on_delay_minutes,
            alert_on_railway_works=request.alert_on_railway_works,
        )
        return favorite
