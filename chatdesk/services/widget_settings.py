"""Widget settings lookup, origin allow-list and public configuration."""

from __future__ import annotations

from urllib.parse import urlparse

from sqlalchemy.orm import Session

from chatdesk.config import settings
from chatdesk.errors import OriginNotAllowedError, WidgetUnavailableError
from chatdesk.logging import get_logger
from chatdesk.models import Department, WidgetSettings
from chatdesk.schemas.widget import DepartmentRead, WidgetPublicConfig
from chatdesk.services import prechat

logger = get_logger(__name__)


def _extract_domain_from_origin(origin: str) -> str | None:
    """Extract the host from an Origin header."""
    if not origin:
        return None
    parsed = urlparse(origin)
    return parsed.hostname.lower() if parsed.hostname else None


def _domain_matches_pattern(domain: str, pattern: str) -> bool:
    """Check if domain matches an allowed pattern (supports wildcards)."""
    pattern = pattern.lower().strip()
    domain = domain.lower().strip()

    if pattern.startswith("*."):
        base_pattern = pattern[2:]
        return domain == base_pattern or domain.endswith("." + base_pattern)

    return domain == pattern


class WidgetSettingsManager:
    """Read side of per-organization widget configuration."""

    @staticmethod
    def get_by_key(db: Session, widget_key: str) -> WidgetSettings | None:
        return db.query(WidgetSettings).filter(WidgetSettings.widget_key == widget_key).first()

    @staticmethod
    def require_enabled(db: Session, widget_key: str) -> WidgetSettings:
        """Return the enabled settings row for a key or raise ``WidgetUnavailableError``."""
        config = WidgetSettingsManager.get_by_key(db, widget_key)
        if not config or not config.enabled:
            logger.info("widget_key_unavailable widget_key=%s", widget_key)
            raise WidgetUnavailableError()
        return config

    @staticmethod
    def validate_origin(config: WidgetSettings, origin: str | None) -> bool:
        """Validate that the request origin is allowed.

        An empty allow-list admits every origin. The "no browser origin"
        sentinel (``null`` from file:// pages and sandboxed frames) is
        admitted as well; a missing header is not.
        """
        if not config.allowed_domains:
            return True

        if origin == settings.widget_no_origin_sentinel:
            return True

        if not origin:
            return False

        domain = _extract_domain_from_origin(origin)
        if not domain:
            return False

        return any(_domain_matches_pattern(domain, pattern) for pattern in config.allowed_domains)

    @staticmethod
    def require_origin(config: WidgetSettings, origin: str | None) -> None:
        if not WidgetSettingsManager.validate_origin(config, origin):
            logger.warning(
                "widget_origin_rejected widget_key=%s origin=%s",
                config.widget_key,
                origin,
            )
            raise OriginNotAllowedError()

    @staticmethod
    def get_public_config(config: WidgetSettings) -> WidgetPublicConfig:
        """Get the public-facing configuration (safe to expose)."""
        return WidgetPublicConfig(
            primary_color=config.primary_color,
            position=config.position,
            widget_title=config.widget_title,
            greeting_message=config.greeting_message,
            auto_open=bool(config.auto_open),
            auto_open_delay=config.auto_open_delay or 0,
            show_agent_avatars=bool(config.show_agent_avatars),
            show_typing_indicator=bool(config.show_typing_indicator),
            play_notification_sound=bool(config.play_notification_sound),
            default_department_id=config.default_department_id,
        )

    @staticmethod
    def list_departments(db: Session, organization_id) -> list[DepartmentRead]:
        """Active departments of an organization, each with its ordered pre-chat form."""
        departments = (
            db.query(Department)
            .filter(Department.organization_id == organization_id)
            .filter(Department.is_active.is_(True))
            .order_by(Department.name.asc())
            .all()
        )
        return [
            DepartmentRead(
                id=department.id,
                name=department.name,
                description=department.description,
                pre_chat_form=prechat.ordered_fields(department.pre_chat_form),
            )
            for department in departments
        ]


# Singleton instance
widget_settings = WidgetSettingsManager()
