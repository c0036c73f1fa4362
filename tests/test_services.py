"""Tests for the collaborators around the queue core.

Ledger service, Telegram notification service, the Celery notification
task, and the Redis maintenance lock.
"""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from p2p_settlement.models.ledger import CustomerAccount, LedgerTransaction, LedgerTransactionType
from p2p_settlement.models.telegram_data import TelegramData
from p2p_settlement.queue_engine.locks import MaintenanceLock
from p2p_settlement.services.ledger_service import (
    InsufficientBalance,
    LedgerBalanceValidator,
    LedgerService,
)
from p2p_settlement.services.notification_service import NotificationService
from p2p_settlement.tasks import notification_tasks


def _scalar(value):
    result = MagicMock()
    result.scalar_one_or_none = MagicMock(return_value=value)
    return result


# ── Ledger ───────────────────────────────────────────────────────────────


class TestLedgerService:
    @pytest.mark.asyncio
    async def test_credit_existing_account(self, mock_session):
        mock_session.execute.return_value = _scalar(Decimal("150.00"))
        balance = await LedgerService().credit(mock_session, "CUST-1", Decimal("50.00"))
        assert balance == Decimal("150.00")
        mock_session.add.assert_not_called()

    @pytest.mark.asyncio
    async def test_credit_opens_account(self, mock_session):
        mock_session.execute.return_value = _scalar(None)
        balance = await LedgerService().credit(mock_session, "CUST-1", Decimal("50.00"))
        assert balance == Decimal("50.00")
        account = mock_session.add.call_args.args[0]
        assert isinstance(account, CustomerAccount)
        assert (account.customer_id, account.balance) == ("CUST-1", Decimal("50.00"))

    @pytest.mark.asyncio
    async def test_debit_insufficient(self, mock_session):
        mock_session.execute.return_value = _scalar(None)
        with pytest.raises(InsufficientBalance):
            await LedgerService().debit(mock_session, "CUST-1", Decimal("50.00"))

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-1")])
    async def test_amounts_must_be_positive(self, mock_session, amount):
        with pytest.raises(ValueError):
            await LedgerService().credit(mock_session, "CUST-1", amount)

    @pytest.mark.asyncio
    async def test_record_transaction(self, mock_session):
        record = await LedgerService().record_transaction(
            mock_session, "CUST-1", Decimal("-25.00"), "withdrawal_matched", "item-1",
        )
        assert isinstance(record, LedgerTransaction)
        assert record.transaction_type == LedgerTransactionType.WITHDRAWAL_MATCHED.value
        assert record.amount == Decimal("-25.00")
        mock_session.flush.assert_awaited()

    @pytest.mark.asyncio
    async def test_get_balance_defaults_to_zero(self, mock_session):
        mock_session.execute.return_value = _scalar(None)
        assert await LedgerService().get_balance(mock_session, "nobody") == Decimal("0")

    @pytest.mark.asyncio
    async def test_balance_validator(self, mock_session_factory):
        ledger = AsyncMock()
        ledger.get_balance = AsyncMock(return_value=Decimal("100.00"))
        validator = LedgerBalanceValidator(session_factory=mock_session_factory, ledger=ledger)
        assert await validator("CUST-1", Decimal("100.00")) is True
        assert await validator("CUST-1", Decimal("100.01")) is False


# ── Notifications ────────────────────────────────────────────────────────


@pytest.fixture
def service():
    svc = NotificationService()
    svc.api_url = "https://telegram.test"
    svc.bot_token = ""
    svc.operator_chat_id = "ops"
    return svc


class TestNotificationService:
    def test_format_known_event(self):
        text = NotificationService.format_message(
            "match_rejected", {"match_id": "m-1", "reason": "wrong account"},
        )
        assert text == "P2P match m-1 rejected: wrong account"

    def test_missing_fields_render_blank(self):
        text = NotificationService.format_message("match_approved", {"match_id": "m-1"})
        assert text == "P2P match m-1 approved. Amount: "

    @pytest.mark.asyncio
    async def test_unconfigured_bot_is_a_no_op(self, service):
        result = await service.send_telegram("42", "hello")
        assert result["status"] == "not_configured"

    @pytest.mark.asyncio
    async def test_send_posts_to_bot_api(self, service):
        service.bot_token = "TOKEN"
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"ok": True})

        real_client = httpx.AsyncClient

        def _client(**kwargs):
            return real_client(transport=httpx.MockTransport(handler), **kwargs)

        with patch("p2p_settlement.services.notification_service.httpx.AsyncClient", side_effect=_client):
            result = await service.send_telegram("42", "hello")

        assert result["status"] == "sent"
        assert str(seen[0].url) == "https://telegram.test/botTOKEN/sendMessage"

    @pytest.mark.asyncio
    async def test_targets_deduplicated_with_operator(self, service):
        service.send_telegram = AsyncMock(return_value={"status": "sent"})
        await service.notify_queue_event("item_queued", {"item_id": "i-1"}, ["42", "42", "ops"])
        chats = [c.args[0] for c in service.send_telegram.await_args_list]
        assert chats == ["42", "ops"]

    @pytest.mark.asyncio
    async def test_one_failed_chat_does_not_stop_the_rest(self, service):
        service.send_telegram = AsyncMock(
            side_effect=[httpx.ConnectError("unreachable"), {"status": "sent"}],
        )
        results = await service.notify_queue_event("item_queued", {}, ["42"])
        assert [r["status"] for r in results] == ["failed", "sent"]

    @pytest.mark.asyncio
    async def test_save_routing_skips_empty(self, mock_session):
        assert await NotificationService.save_routing(mock_session, "i-1", {}) is None
        mock_session.merge.assert_not_awaited()

    def test_chat_target_prefers_group(self):
        row = TelegramData(queue_item_id="i-1", telegram_group_id="g", telegram_chat_id="c")
        assert row.chat_target == "g"
        assert TelegramData(queue_item_id="i-2", telegram_chat_id="c").chat_target == "c"


class TestNotificationTasks:
    def test_dispatch_never_raises(self, caplog):
        with patch("p2p_settlement.tasks.notification_tasks.send_queue_notification") as mock_task:
            mock_task.delay.side_effect = ConnectionError("broker down")
            notification_tasks.dispatch_queue_notification("item_queued", {"item_id": "i-1"})
        assert "item_queued" in caplog.text

    def test_dispatch_enqueues_task(self):
        with patch("p2p_settlement.tasks.notification_tasks.send_queue_notification") as mock_task:
            notification_tasks.dispatch_queue_notification("match_found", {"match_id": "m-1"})
        mock_task.delay.assert_called_once_with("match_found", {"match_id": "m-1"})

    def test_task_runs_delivery(self):
        with patch.object(
            notification_tasks, "_deliver",
            new_callable=AsyncMock, return_value=[{"status": "sent"}],
        ) as deliver:
            result = notification_tasks.send_queue_notification("match_found", {"item_ids": []})
        deliver.assert_awaited_once_with("match_found", {"item_ids": []})
        assert result == [{"status": "sent"}]


# ── Maintenance lock ─────────────────────────────────────────────────────


class TestMaintenanceLock:
    @pytest.mark.asyncio
    async def test_acquire_returns_lock_when_free(self):
        redis_lock = MagicMock()
        redis_lock.acquire = AsyncMock(return_value=True)
        client = MagicMock()
        client.lock = MagicMock(return_value=redis_lock)

        lock = MaintenanceLock(redis_client=client, timeout=30)
        assert await lock.acquire() is redis_lock
        client.lock.assert_called_once_with("queue:maintenance:lock", timeout=30, blocking=False)

    @pytest.mark.asyncio
    async def test_acquire_returns_none_when_held(self):
        redis_lock = MagicMock()
        redis_lock.acquire = AsyncMock(return_value=False)
        client = MagicMock()
        client.lock = MagicMock(return_value=redis_lock)
        assert await MaintenanceLock(redis_client=client).acquire() is None

    @pytest.mark.asyncio
    async def test_release_failure_is_logged(self, caplog):
        redis_lock = MagicMock()
        redis_lock.release = AsyncMock(side_effect=RuntimeError("expired"))
        await MaintenanceLock(redis_client=MagicMock()).release(redis_lock)
        assert "release failed" in caplog.text
