"""Shared fixtures for engine, server and API tests."""

from __future__ import annotations

from collections.abc import Callable, Generator
from pathlib import Path
from typing import Any

import pytest

from guardsync.adapters.stub import InMemoryAdapter
from guardsync.core.config import EngineConfig
from guardsync.core.types import ApiTier, PlatformCategory, ReadWrite, SupportLevel
from guardsync.engine.capabilities import (
    Capability,
    CapabilityRegistry,
    GuidedStep,
    PlatformRegistration,
    SourceRegistration,
)
from guardsync.engine.engine import Engine
from guardsync.rules.categories import RuleCategory
from guardsync.server.database import Database
from guardsync.server.models import Child, Policy

C = RuleCategory


@pytest.fixture
def db(tmp_path: Path) -> Generator[Database, None, None]:
    """Create a test database."""
    database = Database(tmp_path / "test.db")
    yield database
    database.close()


@pytest.fixture
def adapters() -> dict[str, InMemoryAdapter]:
    """In-memory adapters keyed by integration name."""
    return {
        "platform_a": InMemoryAdapter("platform_a"),
        "platform_b": InMemoryAdapter("platform_b"),
        "tracker": InMemoryAdapter("tracker"),
    }


@pytest.fixture
def registry(adapters: dict[str, InMemoryAdapter]) -> CapabilityRegistry:
    """Registry with two platforms and one source type.

    platform_a supports time_daily_limit and content_rating,
    platform_b supports content_rating only.
    """
    platforms = [
        PlatformRegistration(
            "platform_a",
            "Platform A",
            PlatformCategory.DEVICE,
            adapters["platform_a"],
            {C.TIME_DAILY_LIMIT: Capability(), C.CONTENT_RATING: Capability()},
        ),
        PlatformRegistration(
            "platform_b",
            "Platform B",
            PlatformCategory.STREAMING,
            adapters["platform_b"],
            {
                C.CONTENT_RATING: Capability(),
                C.TIME_DAILY_LIMIT: Capability(SupportLevel.NONE),
            },
        ),
    ]
    sources = [
        SourceRegistration(
            slug="tracker",
            display_name="Tracker",
            adapter=adapters["tracker"],
            tiers={
                ApiTier.MANAGED: {
                    C.TIME_DAILY_LIMIT: Capability(read_write=ReadWrite.BIDIRECTIONAL),
                    C.CONTENT_RATING: Capability(),
                    C.WEB_SAFESEARCH: Capability(read_write=ReadWrite.PULL_ONLY),
                },
                ApiTier.GUIDED: {C.TIME_DAILY_LIMIT: Capability(SupportLevel.PARTIAL)},
            },
            guided_steps={
                C.TIME_DAILY_LIMIT: (
                    GuidedStep(1, "Open Tracker", "Open the app.", "https://tracker.example"),
                    GuidedStep(2, "Set the limit", "Set the daily limit."),
                )
            },
        )
    ]
    return CapabilityRegistry(platforms, sources)


@pytest.fixture
def engine_config(tmp_path: Path) -> EngineConfig:
    return EngineConfig(db_path=tmp_path / "engine.db", dispatch_workers=4, dispatch_timeout=5.0)


@pytest.fixture
def engine(
    engine_config: EngineConfig, db: Database, registry: CapabilityRegistry
) -> Generator[Engine, None, None]:
    """Started engine over the test database and registry."""
    eng = Engine(engine_config, db=db, registry=registry)
    eng.start()
    yield eng
    eng.stop()


@pytest.fixture
def child(db: Database) -> Child:
    """A child in a fresh family."""
    family = db.create_family("Smith")
    return db.create_child(family.id, "Alex")


@pytest.fixture
def make_policy(engine: Engine) -> Callable[..., Policy]:
    """Factory creating an active policy with rules through the policy service."""

    def _make(
        child_id: str,
        name: str,
        priority: int,
        rules: dict[RuleCategory, dict[str, Any]],
    ) -> Policy:
        policy = engine.policies.create_policy(child_id, name, priority=priority)
        engine.policies.bulk_upsert(
            policy.id,
            policy.version,
            [(category.value, True, config) for category, config in rules.items()],
        )
        current = engine.policies.get_policy(policy.id)
        return engine.policies.activate(policy.id, current.version)

    return _make


@pytest.fixture
def verified_links(db: Database, child: Child) -> None:
    """Verified compliance links from the child's family to both platforms."""
    db.create_link(child.family_id, "platform_a", "verified")
    db.create_link(child.family_id, "platform_b", "verified")
