"""Tests for the notification service and bounded dispatcher."""

import asyncio

import pytest

from compliance_gateway.adapters.notifications import LoggingNotificationService, NotificationDispatcher
from compliance_gateway.errors import NotificationError


class TestNotificationDispatcher:
    @pytest.mark.asyncio()
    async def test_submitted_jobs_run_once(self) -> None:
        dispatcher = NotificationDispatcher(workers=2, queue_size=10)
        await dispatcher.start()
        ran: list[int] = []

        async def _job(number: int) -> None:
            ran.append(number)

        try:
            for number in range(5):
                assert dispatcher.submit(lambda n=number: _job(n), description=f"job-{number}") is True
            await dispatcher.join()
        finally:
            await dispatcher.stop()

        assert sorted(ran) == [0, 1, 2, 3, 4]

    @pytest.mark.asyncio()
    async def test_submit_before_start_is_dropped(self) -> None:
        dispatcher = NotificationDispatcher()

        async def _job() -> None:
            raise AssertionError("must not run")

        assert dispatcher.submit(_job) is False
        assert dispatcher.pending == 0

    @pytest.mark.asyncio()
    async def test_full_queue_drops_without_blocking(self) -> None:
        dispatcher = NotificationDispatcher(workers=1, queue_size=1)
        await dispatcher.start()

        async def _job() -> None:
            return None

        try:
            # Workers have not been scheduled yet, so the single slot stays taken
            assert dispatcher.submit(_job, description="first") is True
            assert dispatcher.submit(_job, description="second") is False
            await dispatcher.join()
        finally:
            await dispatcher.stop()

    @pytest.mark.asyncio()
    async def test_failing_job_does_not_stop_worker(self) -> None:
        dispatcher = NotificationDispatcher(workers=1, queue_size=10)
        await dispatcher.start()
        ran: list[str] = []

        async def _failing() -> None:
            raise NotificationError("smtp unavailable")

        async def _ok() -> None:
            ran.append("ok")

        try:
            dispatcher.submit(_failing, description="failing")
            dispatcher.submit(_ok, description="ok")
            await dispatcher.join()
            assert dispatcher.is_running
        finally:
            await dispatcher.stop()

        assert ran == ["ok"]

    @pytest.mark.asyncio()
    async def test_stop_discards_pending_jobs(self) -> None:
        dispatcher = NotificationDispatcher(workers=1, queue_size=10)
        release = asyncio.Event()
        ran: list[str] = []

        async def _blocking() -> None:
            await release.wait()

        async def _late() -> None:
            ran.append("late")

        await dispatcher.start()
        dispatcher.submit(_blocking, description="blocking")
        dispatcher.submit(_late, description="late")
        await asyncio.sleep(0)

        await dispatcher.stop()

        assert not dispatcher.is_running
        assert dispatcher.pending == 0
        assert ran == []

    def test_rejects_invalid_sizes(self) -> None:
        with pytest.raises(ValueError):
            NotificationDispatcher(workers=0)
        with pytest.raises(ValueError):
            NotificationDispatcher(queue_size=0)


class TestLoggingNotificationService:
    @pytest.mark.asyncio()
    async def test_methods_complete(self) -> None:
        service = LoggingNotificationService()
        await service.send_compliance_notification(
            application_name="pay-api",
            environment="production",
            passed=False,
            violations=["Critical vulnerabilities are not allowed in production"],
            recipients=["payments-team@example.com"],
        )
        await service.send_critical_vulnerability_alert(
            application_name="pay-api",
            environment="production",
            critical_count=2,
            high_count=0,
            recipients=["payments-team@example.com"],
        )
