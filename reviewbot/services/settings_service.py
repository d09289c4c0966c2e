"""Scoped review settings and the cascade that resolves them."""

import logging
from typing import Any, Optional

from pydantic import ValidationError
from sqlalchemy import delete, func, or_, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from ..orm.setting import Setting, make_scope_key
from ..schemas import (
    IssueCategory,
    LanguageSettings,
    ReviewSettings,
    SettingsOverride,
    Severity,
)
from .database import DatabaseService

logger = logging.getLogger(__name__)

REVIEW_SETTINGS_KEY = "review"

DEFAULT_REVIEW_SETTINGS = ReviewSettings(
    enabled_categories=[
        IssueCategory.SECURITY,
        IssueCategory.PERFORMANCE,
        IssueCategory.STYLE,
        IssueCategory.BUG,
        IssueCategory.BEST_PRACTICE,
    ],
    severity_threshold=Severity.INFO,
    ignored_files=[
        "package-lock.json",
        "yarn.lock",
        "pnpm-lock.yaml",
        "*.min.js",
        "*.min.css",
        "*.map",
        "dist/*",
        "build/*",
        "node_modules/*",
    ],
    ignored_patterns=[
        r"\.test\.",
        r"\.spec\.",
        "__tests__",
        "__mocks__",
    ],
    custom_rules=[],
    language_settings={
        "javascript": LanguageSettings(max_file_size=100000),
        "typescript": LanguageSettings(max_file_size=100000),
        "python": LanguageSettings(max_file_size=100000),
        "java": LanguageSettings(max_file_size=150000),
    },
)


def merge_settings(base: ReviewSettings, layer: Optional[SettingsOverride]) -> ReviewSettings:
    """Apply one cascade layer on top of base.

    Field by field: a field present in the layer replaces the base value
    wholesale (lists and maps are not concatenated), an absent field keeps it.
    """
    if layer is None:
        return base.model_copy(deep=True)
    return base.model_copy(deep=True, update=layer.present_fields())


def _as_override(partial: SettingsOverride | dict[str, Any]) -> SettingsOverride:
    if isinstance(partial, SettingsOverride):
        return partial
    return SettingsOverride.model_validate(partial)


class SettingsResolver:
    """Reads, writes and merges user, repository and user+repository settings."""

    def __init__(self, db_service: DatabaseService):
        self.db = db_service

    async def get_setting(
        self, user_id: Optional[str], repository_id: Optional[str], key: str
    ) -> Optional[Setting]:
        """Get the setting stored for exactly this scope and key."""
        if not user_id and not repository_id:
            return None
        async with self.db.session() as session:
            result = await session.execute(
                select(Setting).where(
                    Setting.scope_key == make_scope_key(user_id, repository_id),
                    Setting.setting_key == key,
                )
            )
            return result.scalar_one_or_none()

    async def set_setting(
        self,
        user_id: Optional[str],
        repository_id: Optional[str],
        key: str,
        value: dict[str, Any],
    ) -> Setting:
        """Insert or overwrite the setting for this scope and key.

        The upsert is a single statement against the unique scope index, so
        concurrent writers cannot create a second row for the same scope.
        """
        scope_key = make_scope_key(user_id, repository_id)
        async with self.db.session() as session:
            stmt = sqlite_insert(Setting).values(
                user_id=user_id,
                repository_id=repository_id,
                scope_key=scope_key,
                setting_key=key,
                setting_value=value,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["scope_key", "setting_key"],
                set_={"setting_value": stmt.excluded.setting_value, "updated_at": func.now()},
            )
            await session.execute(stmt)

            result = await session.execute(
                select(Setting)
                .where(Setting.scope_key == scope_key, Setting.setting_key == key)
                .execution_options(populate_existing=True)
            )
            setting = result.scalar_one()

        logger.debug("Stored setting %s for scope %s", key, scope_key)
        return setting

    async def delete_setting(
        self, user_id: Optional[str], repository_id: Optional[str], key: str
    ) -> None:
        """Delete the setting for this scope and key, if any."""
        if not user_id and not repository_id:
            return
        async with self.db.session() as session:
            await session.execute(
                delete(Setting).where(
                    Setting.scope_key == make_scope_key(user_id, repository_id),
                    Setting.setting_key == key,
                )
            )

    async def list_settings(
        self, user_id: Optional[str], repository_id: Optional[str]
    ) -> list[Setting]:
        """List settings visible to a scope.

        With both ids this returns the user, repository and user+repository
        rows; with one id only that scope's rows.
        """
        if user_id and repository_id:
            scope_keys = [
                make_scope_key(user_id, None),
                make_scope_key(None, repository_id),
                make_scope_key(user_id, repository_id),
            ]
        elif user_id or repository_id:
            scope_keys = [make_scope_key(user_id, repository_id)]
        else:
            return []

        async with self.db.session() as session:
            result = await session.execute(
                select(Setting)
                .where(or_(*(Setting.scope_key == k for k in scope_keys)))
                .order_by(Setting.setting_key)
            )
            return list(result.scalars().all())

    def _parse_layer(self, setting: Setting) -> Optional[SettingsOverride]:
        try:
            return SettingsOverride.model_validate(setting.setting_value or {})
        except ValidationError as e:
            logger.warning("Ignoring invalid settings blob for scope %s: %s", setting.scope_key, e)
            return None

    async def resolve(self, user_id: str, repository_id: Optional[str] = None) -> ReviewSettings:
        """Resolve the effective settings for a user, optionally within a repository.

        Precedence, lowest first: built-in defaults, user, repository,
        user+repository. Missing layers are skipped, so this always returns
        at least the defaults.

        Args:
            user_id: Requesting user.
            repository_id: Repository being reviewed, if any.

        Returns:
            The merged settings.
        """
        layer_keys = [make_scope_key(user_id, None)]
        if repository_id:
            layer_keys.append(make_scope_key(None, repository_id))
            layer_keys.append(make_scope_key(user_id, repository_id))

        async with self.db.session() as session:
            result = await session.execute(
                select(Setting).where(
                    Setting.setting_key == REVIEW_SETTINGS_KEY,
                    or_(*(Setting.scope_key == k for k in layer_keys)),
                )
            )
            rows = {row.scope_key: row for row in result.scalars().all()}

        settings = DEFAULT_REVIEW_SETTINGS
        for scope_key in layer_keys:
            row = rows.get(scope_key)
            if row is None:
                continue
            settings = merge_settings(settings, self._parse_layer(row))

        return settings.model_copy(deep=True)

    async def update_user_settings(
        self, user_id: str, partial: SettingsOverride | dict[str, Any]
    ) -> ReviewSettings:
        """Apply a partial update to a user's settings and store the result.

        Fields missing from the partial keep their current value; to clear a
        list it must be sent explicitly as empty.
        """
        current = await self.resolve(user_id)
        merged = merge_settings(current, _as_override(partial))
        await self.set_setting(user_id, None, REVIEW_SETTINGS_KEY, merged.model_dump(mode="json"))
        logger.info("Updated review settings for user %s", user_id)
        return merged

    async def update_repository_settings(
        self, repository_id: str, partial: SettingsOverride | dict[str, Any]
    ) -> ReviewSettings:
        """Apply a partial update to a repository's settings and store the result."""
        existing = await self.get_setting(None, repository_id, REVIEW_SETTINGS_KEY)
        current = merge_settings(DEFAULT_REVIEW_SETTINGS, self._parse_layer(existing) if existing else None)
        merged = merge_settings(current, _as_override(partial))
        await self.set_setting(None, repository_id, REVIEW_SETTINGS_KEY, merged.model_dump(mode="json"))
        logger.info("Updated review settings for repository %s", repository_id)
        return merged
