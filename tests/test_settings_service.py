"""Tests for SettingsResolver and the settings cascade."""

import asyncio

from sqlalchemy import func, select

from reviewbot.orm.setting import Setting, make_scope_key
from reviewbot.schemas import IssueCategory, SettingsOverride, Severity
from reviewbot.services.settings_service import (
    DEFAULT_REVIEW_SETTINGS,
    REVIEW_SETTINGS_KEY,
    SettingsResolver,
    merge_settings,
)

from .fakes import connect_repository, open_database


class TestMergeSettings:
    """Test shallow layer merging."""

    def test_present_fields_replace(self):
        """Test a present field replaces the lower value wholesale."""
        merged = merge_settings(DEFAULT_REVIEW_SETTINGS, SettingsOverride(ignored_files=["*.lock"]))

        assert merged.ignored_files == ["*.lock"]
        assert merged.ignored_patterns == DEFAULT_REVIEW_SETTINGS.ignored_patterns

    def test_empty_list_is_present(self):
        """Test an explicitly empty list clears the lower value."""
        merged = merge_settings(DEFAULT_REVIEW_SETTINGS, SettingsOverride(ignored_patterns=[]))
        assert merged.ignored_patterns == []

    def test_missing_layer(self):
        """Test merging nothing returns an equal copy."""
        assert merge_settings(DEFAULT_REVIEW_SETTINGS, None) == DEFAULT_REVIEW_SETTINGS

    def test_defaults_not_mutated(self):
        """Test merging never changes the defaults."""
        merged = merge_settings(DEFAULT_REVIEW_SETTINGS, SettingsOverride(severity_threshold="critical"))
        merged.ignored_files.append("extra")

        assert DEFAULT_REVIEW_SETTINGS.severity_threshold == Severity.INFO
        assert "extra" not in DEFAULT_REVIEW_SETTINGS.ignored_files


class TestScopeKey:
    """Test derived scope keys."""

    def test_scope_keys(self):
        """Test each scope shape gets a distinct key."""
        assert make_scope_key("u1", None) == "user:u1"
        assert make_scope_key(None, "r1") == "repo:r1"
        assert make_scope_key("u1", "r1") == "user:u1/repo:r1"


class TestSettingsResolver:
    """Test the four-tier cascade against storage."""

    def test_defaults_only(self, tmp_path):
        """Test resolution with no stored layers returns the defaults."""

        async def scenario():
            db = await open_database(tmp_path / "test.db")
            try:
                repo = await connect_repository(db)
                settings = await SettingsResolver(db).resolve(repo.user_id, repo.id)

                assert settings == DEFAULT_REVIEW_SETTINGS
                assert settings.severity_threshold == Severity.INFO
                assert IssueCategory.SECURITY in settings.enabled_categories
                assert settings.language_settings["java"].max_file_size == 150000
            finally:
                await db.close()

        asyncio.run(scenario())

    def test_cascade_precedence(self, tmp_path):
        """Test user < repository < user+repository precedence."""

        async def scenario():
            db = await open_database(tmp_path / "test.db")
            try:
                repo = await connect_repository(db)
                resolver = SettingsResolver(db)
                user_id = repo.user_id

                await resolver.set_setting(user_id, None, REVIEW_SETTINGS_KEY, {"severity_threshold": "warning"})
                await resolver.set_setting(None, repo.id, REVIEW_SETTINGS_KEY, {})
                assert (await resolver.resolve(user_id, repo.id)).severity_threshold == Severity.WARNING

                await resolver.set_setting(user_id, repo.id, REVIEW_SETTINGS_KEY, {"severity_threshold": "critical"})
                assert (await resolver.resolve(user_id, repo.id)).severity_threshold == Severity.CRITICAL

                # Outside the repository only the user layer applies
                assert (await resolver.resolve(user_id)).severity_threshold == Severity.WARNING
            finally:
                await db.close()

        asyncio.run(scenario())

    def test_repository_layer_over_user_layer(self, tmp_path):
        """Test the repository layer overrides the user layer field by field."""

        async def scenario():
            db = await open_database(tmp_path / "test.db")
            try:
                repo = await connect_repository(db)
                resolver = SettingsResolver(db)

                await resolver.set_setting(
                    repo.user_id, None, REVIEW_SETTINGS_KEY,
                    {"severity_threshold": "warning", "ignored_files": ["a.txt"]},
                )
                await resolver.set_setting(None, repo.id, REVIEW_SETTINGS_KEY, {"ignored_files": []})

                settings = await resolver.resolve(repo.user_id, repo.id)
                assert settings.severity_threshold == Severity.WARNING
                assert settings.ignored_files == []
            finally:
                await db.close()

        asyncio.run(scenario())

    def test_invalid_blob_is_skipped(self, tmp_path):
        """Test a stored layer that fails validation is treated as absent."""

        async def scenario():
            db = await open_database(tmp_path / "test.db")
            try:
                repo = await connect_repository(db)
                resolver = SettingsResolver(db)
                await resolver.set_setting(repo.user_id, None, REVIEW_SETTINGS_KEY, {"severity_threshold": "warning"})
                await resolver.set_setting(None, repo.id, REVIEW_SETTINGS_KEY, {"severity_threshold": "extreme"})

                settings = await resolver.resolve(repo.user_id, repo.id)
                assert settings.severity_threshold == Severity.WARNING
            finally:
                await db.close()

        asyncio.run(scenario())

    def test_upsert_keeps_one_row_per_scope(self, tmp_path):
        """Test writing a scope twice overwrites instead of duplicating."""

        async def scenario():
            db = await open_database(tmp_path / "test.db")
            try:
                repo = await connect_repository(db)
                resolver = SettingsResolver(db)

                await resolver.set_setting(repo.user_id, None, REVIEW_SETTINGS_KEY, {"severity_threshold": "warning"})
                await asyncio.gather(
                    resolver.set_setting(repo.user_id, None, REVIEW_SETTINGS_KEY, {"severity_threshold": "critical"}),
                    resolver.set_setting(repo.user_id, None, REVIEW_SETTINGS_KEY, {"severity_threshold": "critical"}),
                )

                async with db.session() as session:
                    count = (await session.execute(select(func.count()).select_from(Setting))).scalar_one()
                assert count == 1
                stored = await resolver.get_setting(repo.user_id, None, REVIEW_SETTINGS_KEY)
                assert stored.setting_value == {"severity_threshold": "critical"}
            finally:
                await db.close()

        asyncio.run(scenario())

    def test_update_user_settings_is_partial(self, tmp_path):
        """Test a partial user update keeps other fields."""

        async def scenario():
            db = await open_database(tmp_path / "test.db")
            try:
                repo = await connect_repository(db)
                resolver = SettingsResolver(db)

                await resolver.update_user_settings(repo.user_id, {"ignored_files": ["*.snap"]})
                updated = await resolver.update_user_settings(repo.user_id, SettingsOverride(severity_threshold="critical"))

                assert updated.ignored_files == ["*.snap"]
                assert updated.severity_threshold == Severity.CRITICAL
                assert await resolver.resolve(repo.user_id) == updated
            finally:
                await db.close()

        asyncio.run(scenario())

    def test_update_repository_settings(self, tmp_path):
        """Test repository updates merge over the stored repository blob."""

        async def scenario():
            db = await open_database(tmp_path / "test.db")
            try:
                repo = await connect_repository(db)
                resolver = SettingsResolver(db)

                await resolver.update_repository_settings(repo.id, {"severity_threshold": "warning"})
                updated = await resolver.update_repository_settings(repo.id, {"ignored_patterns": ["vendor/"]})

                assert updated.severity_threshold == Severity.WARNING
                assert updated.ignored_patterns == ["vendor/"]
                assert (await resolver.resolve(repo.user_id, repo.id)).ignored_patterns == ["vendor/"]
            finally:
                await db.close()

        asyncio.run(scenario())

    def test_list_and_delete_settings(self, tmp_path):
        """Test listing the layers visible to a scope and deleting one."""

        async def scenario():
            db = await open_database(tmp_path / "test.db")
            try:
                repo = await connect_repository(db)
                resolver = SettingsResolver(db)
                await resolver.set_setting(repo.user_id, None, REVIEW_SETTINGS_KEY, {})
                await resolver.set_setting(None, repo.id, REVIEW_SETTINGS_KEY, {})
                await resolver.set_setting(repo.user_id, repo.id, REVIEW_SETTINGS_KEY, {})

                assert len(await resolver.list_settings(repo.user_id, repo.id)) == 3
                assert len(await resolver.list_settings(None, repo.id)) == 1

                await resolver.delete_setting(None, repo.id, REVIEW_SETTINGS_KEY)
                assert await resolver.get_setting(None, repo.id, REVIEW_SETTINGS_KEY) is None
                assert len(await resolver.list_settings(repo.user_id, repo.id)) == 2
            finally:
                await db.close()

        asyncio.run(scenario())
