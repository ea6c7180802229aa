import abc
import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.models.receipt import Entity, SheetConfig, UserProfile
from app.schemas.receipt import UNASSIGNED_ENTITY, TenantSheetRoute
from app.utils.clock import now_utc

logger = logging.getLogger(__name__)

ACTIVE = "active"


class RouteResolver(abc.ABC):
    @abc.abstractmethod
    def resolve_route(self, user_id: str) -> Optional[TenantSheetRoute]:
        """Pick the destination sheet; ``None`` when nothing is configured."""

    def record_use(self, route: TenantSheetRoute) -> None:
        return None

    def entity_for(self, user_id: str) -> str:
        return UNASSIGNED_ENTITY


def _route_from_config(config: SheetConfig, source: str) -> TenantSheetRoute:
    return TenantSheetRoute(
        sheet_id=config.sheet_id,
        main_tab_name=config.main_tab_name or None,
        accountant_tab_name=config.accountant_tab_name or None,
        config_id=config.id,
        source=source,
    )


class SqlRouteResolver(RouteResolver):
    """User assignment, then entity assignment, then default config, then the global sheet."""

    def __init__(self, db: Session, *, fallback_sheet_id: str = "") -> None:
        self.db = db
        self.fallback_sheet_id = fallback_sheet_id

    def _active_config(self, config_id: Optional[str]) -> Optional[SheetConfig]:
        if not config_id:
            return None
        config = self.db.get(SheetConfig, config_id)
        if config is None or config.status != ACTIVE:
            logger.warning("Assigned sheet config %s not found or inactive", config_id)
            return None
        return config

    def resolve_route(self, user_id: str) -> Optional[TenantSheetRoute]:
        profile = self.db.get(UserProfile, user_id)
        if profile is not None:
            config = self._active_config(profile.sheet_config_id)
            if config is not None:
                return _route_from_config(config, "user")

            if profile.entity_id:
                entity = self.db.get(Entity, profile.entity_id)
                if entity is not None:
                    config = self._active_config(entity.sheet_config_id)
                    if config is not None:
                        return _route_from_config(config, "entity")

        default = self.db.execute(
            select(SheetConfig)
            .where(SheetConfig.is_default.is_(True), SheetConfig.status == ACTIVE)
            .order_by(SheetConfig.created_at.asc())
            .limit(1)
        ).scalar_one_or_none()
        if default is not None:
            return _route_from_config(default, "default")

        if self.fallback_sheet_id:
            return TenantSheetRoute(sheet_id=self.fallback_sheet_id, source="global")
        return None

    def record_use(self, route: TenantSheetRoute) -> None:
        if not route.config_id:
            return
        try:
            config = self.db.get(SheetConfig, route.config_id)
            if config is None:
                return
            config.total_receipts = (config.total_receipts or 0) + 1
            config.last_receipt_at = now_utc(self.db)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Failed to update sheet stats for config %s", route.config_id)

    def entity_for(self, user_id: str) -> str:
        profile = self.db.get(UserProfile, user_id)
        if profile is None or not profile.entity_id:
            return UNASSIGNED_ENTITY
        entity = self.db.get(Entity, profile.entity_id)
        return entity.name if entity is not None and entity.name else UNASSIGNED_ENTITY
