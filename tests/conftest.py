"""Shared pytest fixtures — SQLite-backed sessions, fake Redis, async test client."""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from trayflow.auth.dependencies import AuthPrincipal, get_current_principal
from trayflow.auth.jwt import create_access_token
from trayflow.database import get_db
from trayflow.main import app
from trayflow.models import Base, Recipe
from trayflow.models.enums import UserRoleEnum
from trayflow.schemas.crops import BatchCreate
from trayflow.services.batch_service import BatchService
from trayflow.services.stage_registry import StageRegistry, ensure_default_stages

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

T0 = datetime(2025, 1, 1, 8, 0, tzinfo=UTC)


class FakeAsyncSession:
	def __init__(self) -> None:
		self.commit = AsyncMock()
		self.rollback = AsyncMock()
		self.close = AsyncMock()
		self.execute = AsyncMock(return_value=MagicMock())
		self.flush = AsyncMock()


class FakeRedisLock:
	def __init__(self, name: str) -> None:
		self.name = name
		self.acquire = AsyncMock(return_value=True)
		self.release = AsyncMock()


class FakeRedis:
	def __init__(self) -> None:
		self.publish = AsyncMock()
		self.ping = AsyncMock(return_value=True)
		self.locks: list[FakeRedisLock] = []

	def lock(self, name: str, timeout: float | None = None, blocking_timeout: float | None = None) -> FakeRedisLock:
		lock = FakeRedisLock(name)
		self.locks.append(lock)
		return lock


@pytest.fixture
def fake_db_session() -> FakeAsyncSession:
	"""A lightweight async-session stub for dependency overrides in API tests."""
	return FakeAsyncSession()


@pytest.fixture
def fake_redis() -> FakeRedis:
	"""Fake Redis client recording publishes and lock usage."""
	return FakeRedis()


@pytest.fixture
async def sqlite_engine() -> AsyncGenerator[AsyncEngine, None]:
	engine = create_async_engine(
		TEST_DATABASE_URL,
		poolclass=StaticPool,
		connect_args={"check_same_thread": False},
	)
	async with engine.begin() as connection:
		await connection.run_sync(Base.metadata.create_all)
	yield engine
	await engine.dispose()


@pytest.fixture
async def db_session(sqlite_engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
	"""Real ORM session on in-memory SQLite with the default stages seeded."""
	factory = async_sessionmaker(sqlite_engine, class_=AsyncSession, expire_on_commit=False)
	async with factory() as session:
		await ensure_default_stages(session)
		await session.commit()
		yield session


@pytest.fixture
async def registry(db_session: AsyncSession) -> StageRegistry:
	return await StageRegistry.load(db_session)


@pytest.fixture
def recipe_factory(db_session: AsyncSession) -> Callable[..., Awaitable[Recipe]]:
	"""Insert a recipe; defaults describe a soaked pea shoot (3/2/5 days, 24h soak)."""

	async def make(**overrides: Any) -> Recipe:
		values: dict[str, Any] = {
			"id": uuid.uuid4(),
			"variety_id": uuid.uuid4(),
			"name": "Pea shoots",
			"seed_soak_hours": 24.0,
			"germination_days": 3.0,
			"blackout_days": 2.0,
			"light_days": 5.0,
			"days_to_maturity": 10.0,
			"expected_yield_grams": 150.0,
			"buffer_percentage": 10.0,
			"suspend_water_hours": 12.0,
			"is_active": True,
			"lot_depleted": False,
		}
		values.update(overrides)
		recipe = Recipe(**values)
		db_session.add(recipe)
		await db_session.flush()
		return recipe

	return make


@pytest.fixture
def batch_factory(db_session: AsyncSession) -> Callable[..., Awaitable[Any]]:
	"""Create a batch through ``BatchService`` and return it."""

	async def make(recipe: Recipe, tray_count: int = 4, **overrides: Any) -> Any:
		payload = BatchCreate(
			recipe_id=recipe.id,
			tray_count=tray_count,
			started_at=overrides.pop("started_at", T0),
			**overrides,
		)
		batch = await BatchService(db_session).create_batch(payload)
		await db_session.commit()
		return batch

	return make


def _noop_lifespan_client(overrides: dict[Any, Any]) -> Callable[[], Any]:
	@asynccontextmanager
	async def make() -> AsyncGenerator[AsyncClient, None]:
		app.dependency_overrides.update(overrides)
		original_lifespan = app.router.lifespan_context

		@asynccontextmanager
		async def noop_lifespan(_: Any) -> AsyncGenerator[None, None]:
			yield

		app.router.lifespan_context = noop_lifespan
		transport = ASGITransport(app=app)
		try:
			async with AsyncClient(transport=transport, base_url="http://test") as test_client:
				yield test_client
		finally:
			app.router.lifespan_context = original_lifespan
			app.dependency_overrides.clear()

	return make


@pytest.fixture
def actor_id() -> uuid.UUID:
	return uuid.UUID("11111111-1111-1111-1111-111111111111")


@pytest.fixture
async def client(fake_db_session: FakeAsyncSession, actor_id: uuid.UUID) -> AsyncGenerator[AsyncClient, None]:
	"""HTTPX async client with lifespan disabled, DB mocked and an admin principal."""

	async def override_get_db() -> AsyncGenerator[Any, None]:
		yield fake_db_session

	async def override_principal() -> AuthPrincipal:
		return AuthPrincipal(subject_id=actor_id, role=UserRoleEnum.admin)

	async with _noop_lifespan_client(
		{get_db: override_get_db, get_current_principal: override_principal}
	)() as test_client:
		yield test_client


@pytest.fixture
async def auth_client(fake_db_session: FakeAsyncSession) -> AsyncGenerator[AsyncClient, None]:
	"""HTTPX async client with DB override only (real auth dependencies active)."""

	async def override_get_db() -> AsyncGenerator[Any, None]:
		yield fake_db_session

	async with _noop_lifespan_client({get_db: override_get_db})() as test_client:
		yield test_client


@pytest.fixture
async def sqlite_client(db_session: AsyncSession, actor_id: uuid.UUID) -> AsyncGenerator[AsyncClient, None]:
	"""HTTPX client wired to the real SQLite session for end-to-end route tests."""

	async def override_get_db() -> AsyncGenerator[Any, None]:
		yield db_session
		await db_session.commit()

	async def override_principal() -> AuthPrincipal:
		return AuthPrincipal(subject_id=actor_id, role=UserRoleEnum.grower)

	async with _noop_lifespan_client(
		{get_db: override_get_db, get_current_principal: override_principal}
	)() as test_client:
		yield test_client


@pytest.fixture
def grower_token(actor_id: uuid.UUID) -> str:
	return create_access_token(str(actor_id), UserRoleEnum.grower, expires_minutes=30)


@pytest.fixture
def viewer_token(actor_id: uuid.UUID) -> str:
	return create_access_token(str(actor_id), UserRoleEnum.viewer, expires_minutes=30)
