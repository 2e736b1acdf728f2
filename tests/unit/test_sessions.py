from __future__ import annotations

import asyncio

import pytest

from checkpool.clients.result_cache import InMemoryResultCache
from checkpool.domain.errors import DomainConflictError, DomainNotFoundError, DomainValidationError
from checkpool.domain.fingerprint import fingerprint
from checkpool.domain.models import CheckSource, ItemStatus, NewWorkItem, ReportCommand, SessionStatus
from checkpool.domain.use_cases.lease import fetch_batch, report_result
from checkpool.domain.use_cases.sessions import session_status, split_items, start_session, stop_session
from checkpool.repositories.stub import InMemoryWorkRepository
from checkpool.services.live_config import DEFAULT_SETTINGS, InMemoryConfigSource, LiveConfig


def _config(**overrides: object) -> LiveConfig:
    return LiveConfig(source=InMemoryConfigSource(values={**DEFAULT_SETTINGS, **overrides}))


@pytest.mark.unit
def test_split_items_accepts_text_and_lists() -> None:
    assert split_items("a\n\n  b \r\n") == ["a", "b"]
    assert split_items([" a ", "", "b"]) == ["a", "b"]


@pytest.mark.unit
def test_start_seeds_items_and_runs_session() -> None:
    async def _run() -> None:
        repository = InMemoryWorkRepository()
        config = _config(price_per_item=0.1)

        result = await start_session(
            repository=repository,
            config=config,
            owner_id="owner-1",
            items="one\ntwo\nthree",
            check_type=2,
        )

        assert result.seeded == 3
        assert result.skipped == []
        assert result.session.status == SessionStatus.RUNNING
        assert result.session.started_at is not None
        assert result.session.estimated_cost == 0.3
        assert {row.session_id for row in repository.items.values()} == {result.session.session_id}
        assert {row.check_source for row in repository.items.values()} == {CheckSource.MANUAL_SEED}
        assert {row.check_type for row in repository.items.values()} == {2}

    asyncio.run(_run())


@pytest.mark.unit
def test_start_skips_duplicates_without_failing() -> None:
    async def _run() -> None:
        repository = InMemoryWorkRepository()
        config = _config()
        await repository.insert_item(
            item=NewWorkItem(
                content="known",
                fingerprint=fingerprint("known"),
                owner_id="owner-1",
                check_type=1,
                check_source=CheckSource.MANUAL_SEED,
            )
        )

        result = await start_session(
            repository=repository,
            config=config,
            owner_id="owner-1",
            items=["known", "fresh", "fresh"],
            check_type=1,
        )

        assert result.seeded == 1
        assert result.skipped == [fingerprint("known"), fingerprint("fresh")]
        assert result.session.status == SessionStatus.RUNNING

    asyncio.run(_run())


@pytest.mark.unit
def test_start_with_nothing_seedable_marks_session_failed() -> None:
    async def _run() -> None:
        repository = InMemoryWorkRepository()
        config = _config()
        first = await start_session(repository=repository, config=config, owner_id="o", items=["x"], check_type=1)
        assert first.seeded == 1

        second = await start_session(repository=repository, config=config, owner_id="o", items=["x"], check_type=1)

        assert second.seeded == 0
        assert second.session.status == SessionStatus.FAILED
        assert second.session.ended_at is not None

    asyncio.run(_run())


@pytest.mark.unit
def test_start_validates_item_list() -> None:
    async def _run() -> None:
        repository = InMemoryWorkRepository()
        with pytest.raises(DomainValidationError):
            await start_session(repository=repository, config=_config(), owner_id="o", items="\n \n", check_type=1)
        with pytest.raises(DomainValidationError):
            await start_session(
                repository=repository,
                config=_config(max_items_per_session=2),
                owner_id="o",
                items=["a", "b", "c"],
                check_type=1,
            )
        assert repository.sessions == {}

    asyncio.run(_run())


@pytest.mark.unit
def test_stop_releases_leased_items_and_second_stop_is_noop() -> None:
    async def _run() -> None:
        repository = InMemoryWorkRepository()
        config = _config()
        started = await start_session(
            repository=repository, config=config, owner_id="o", items=["a", "b"], check_type=1
        )
        session_id = started.session.session_id
        await fetch_batch(
            repository=repository,
            cache=InMemoryResultCache(),
            config=config,
            device="dev",
            quantity=1,
            check_type=1,
        )

        stopped = await stop_session(repository=repository, owner_id="o", session_id=session_id)
        again = await stop_session(repository=repository, owner_id="o", session_id=session_id)

        assert stopped.released == 2
        assert stopped.session.status == SessionStatus.STOPPED
        assert stopped.session.stop_requested is True
        assert stopped.session.ended_at is not None
        assert again.released == 0
        assert again.session.status == SessionStatus.STOPPED
        for row in repository.items.values():
            assert row.status == ItemStatus.PENDING
            assert row.session_id is None
        assert (session_id, SessionStatus.RUNNING, SessionStatus.STOPPING) in repository.transitions
        assert (session_id, SessionStatus.STOPPING, SessionStatus.STOPPED) in repository.transitions

    asyncio.run(_run())


@pytest.mark.unit
def test_stop_rejects_foreign_and_finished_sessions() -> None:
    async def _run() -> None:
        repository = InMemoryWorkRepository()
        config = _config()
        running = await start_session(repository=repository, config=config, owner_id="o", items=["x"], check_type=1)
        duplicate = await start_session(repository=repository, config=config, owner_id="o", items=["x"], check_type=1)

        with pytest.raises(DomainNotFoundError) as not_found:
            await stop_session(repository=repository, owner_id="intruder", session_id=running.session.session_id)
        assert not_found.value.error_code == "session_not_found"

        with pytest.raises(DomainConflictError) as not_stoppable:
            await stop_session(repository=repository, owner_id="o", session_id=duplicate.session.session_id)
        assert not_stoppable.value.error_code == "session_not_stoppable"

    asyncio.run(_run())


@pytest.mark.unit
def test_status_reflects_reports_and_auto_completes() -> None:
    async def _run() -> None:
        repository = InMemoryWorkRepository()
        cache = InMemoryResultCache()
        config = _config()
        started = await start_session(
            repository=repository, config=config, owner_id="o", items=["a", "b"], check_type=1
        )
        session_id = started.session.session_id
        leased = await fetch_batch(
            repository=repository, cache=cache, config=config, device="dev", quantity=2, check_type=1
        )
        await report_result(
            repository=repository,
            cache=cache,
            config=config,
            command=ReportCommand(item_id=leased.items[0].item_id, outcome_code=3, message="declined"),
        )

        halfway = await session_status(repository=repository, owner_id="o", session_id=session_id)
        assert halfway.session.status == SessionStatus.RUNNING
        assert halfway.processed == 1
        assert halfway.pending == 1
        assert halfway.progress == 50
        assert halfway.counts[ItemStatus.RESOLVED_FAILURE] == 1
        assert halfway.counts[ItemStatus.LEASED] == 1

        await report_result(
            repository=repository,
            cache=cache,
            config=config,
            command=ReportCommand(item_id=leased.items[1].item_id, outcome_code=2),
        )
        done = await session_status(repository=repository, owner_id="o", session_id=session_id)

        assert done.session.status == SessionStatus.COMPLETED
        assert done.progress == 100
        resolved = {item.item_id: item for item in done.items}
        assert resolved[leased.items[0].item_id].resolution is not None
        assert resolved[leased.items[0].item_id].resolution.message == "declined"

    asyncio.run(_run())
