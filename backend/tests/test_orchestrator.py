"""Tests for the session orchestrator: request, bank cycle, external outcomes."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from conftest import FakeConnection
from posterm.core.errors import InvalidRequest, InvalidTransition, SessionNotFound, TerminalNotConnected
from posterm.db.models import PaymentSession
from posterm.services.bank_simulator import CaptureResult


async def count_sessions(core) -> int:
    async with core.sessions() as db:
        return await db.scalar(select(func.count()).select_from(PaymentSession))


class TestRequestPayment:
    async def test_connected_terminal_gets_request(self, core, terminal):
        session = await core.orchestrator.request_payment("T1", 15000)

        assert session.status == "pending"
        assert session.currency == "RUB"
        [req] = terminal.of_type("payment_request")
        assert req["paymentId"] == session.id
        assert req["amount"] == 15000
        assert req["currency"] == "RUB"
        assert "qrPayload" not in req

    async def test_qr_request_carries_signed_payload(self, core, terminal):
        session = await core.orchestrator.request_payment("T1", 700, method="qr")

        [req] = terminal.of_type("payment_request")
        assert req["method"] == "qr"
        assert req["qrPayload"]["paymentId"] == session.id
        assert req["qrPayload"]["signature"] == core.orchestrator.qr_payload(session)["signature"]

    async def test_offline_terminal_fails_session(self, core):
        with pytest.raises(TerminalNotConnected) as exc_info:
            await core.orchestrator.request_payment("T9", 15000)

        failed = exc_info.value.session
        assert failed.status == "failed"
        assert failed.error_code == "TERMINAL_OFFLINE"

        stored = await core.orchestrator.get_session(failed.id)
        assert stored.status == "failed"
        assert stored.completed_at is not None

    @pytest.mark.parametrize("terminal_id,amount,currency", [
        ("T1", 0, None),
        ("T1", -5, None),
        ("T1", 10_000_001, None),
        ("T1", 12.5, None),
        ("T1", True, None),
        ("", 100, None),
        ("   ", 100, None),
        ("T1", 100, "USD"),
    ])
    async def test_invalid_input_writes_nothing(self, core, terminal, terminal_id, amount, currency):
        with pytest.raises(InvalidRequest):
            await core.orchestrator.request_payment(terminal_id, amount, currency)

        assert await count_sessions(core) == 0
        assert terminal.of_type("payment_request") == []

    async def test_unknown_method_rejected(self, core, terminal):
        with pytest.raises(InvalidRequest):
            await core.orchestrator.request_payment("T1", 100, method="cash")
        assert await count_sessions(core) == 0


class TestBankCycle:
    async def test_nfc_happy_path(self, core, terminal):
        session = await core.orchestrator.request_payment("T1", 15000)
        done = await core.orchestrator.handle_method_detected(
            "T1", session.id, "nfc", {"cardNumber": "4111111111111111", "cardType": "visa"},
        )

        assert done.status == "completed"
        assert done.method == "nfc"
        assert done.bank_transaction_id
        assert done.completed_at is not None
        assert terminal.statuses() == ["processing", "completed"]

        final = terminal.of_type("payment_status")[-1]
        assert final["paymentId"] == session.id
        assert final["message"] == "Payment successful"
        assert final["result"]["amount"] == 15000
        assert final["result"]["transactionId"] == done.bank_transaction_id
        assert len(final["result"]["authCode"]) == 6

    async def test_decline_never_captures(self, core, terminal, bank, monkeypatch):
        captures = []

        async def spy_capture(transaction_id, amount=None):
            captures.append(transaction_id)
            return CaptureResult(success=True, transaction_id=transaction_id, status="captured",
                                 timestamp=datetime.now(timezone.utc))

        monkeypatch.setattr(bank, "capture", spy_capture)
        bank.set_success_rate(0.0)

        session = await core.orchestrator.request_payment("T1", 15000)
        done = await core.orchestrator.handle_method_detected("T1", session.id, "nfc")

        assert done.status == "failed"
        assert done.error_code in {"E001", "E002", "E003", "E004", "E005", "E006"}
        assert done.bank_transaction_id is None
        assert captures == []

        final = terminal.of_type("payment_status")[-1]
        assert final["status"] == "failed"
        assert final["error"]["code"] == done.error_code
        assert final["error"]["showRetry"] is True
        assert final["error"]["timeout"] == 5000

    async def test_capture_failure(self, core, terminal, bank):
        bank.capture_success_rate = 0.0

        session = await core.orchestrator.request_payment("T1", 15000)
        done = await core.orchestrator.handle_method_detected("T1", session.id, "nfc")

        assert done.status == "failed"
        assert done.error_code == "E007"
        assert terminal.statuses() == ["processing", "failed"]

    async def test_bank_exception_becomes_network_error(self, core, terminal, bank, monkeypatch):
        async def broken(request):
            raise ConnectionError("bank link down")

        monkeypatch.setattr(bank, "authorize", broken)

        session = await core.orchestrator.request_payment("T1", 15000)
        done = await core.orchestrator.handle_method_detected("T1", session.id, "nfc")

        assert done.status == "failed"
        assert done.error_code == "E003"
        assert terminal.of_type("payment_status")[-1]["error"]["type"] == "network"

    async def test_bank_timeout_becomes_network_error(self, core, terminal, bank, monkeypatch):
        async def hang(transaction_id, amount=None):
            await asyncio.sleep(5)

        monkeypatch.setattr(bank, "capture", hang)
        core.orchestrator.settings.BANK_CALL_TIMEOUT_SECONDS = 0.05

        session = await core.orchestrator.request_payment("T1", 15000)
        done = await core.orchestrator.handle_method_detected("T1", session.id, "nfc")

        assert done.status == "failed"
        assert done.error_code == "E003"

    async def test_authorize_completes_before_capture(self, core, terminal, bank, monkeypatch):
        calls = []
        authorize, capture = bank.authorize, bank.capture

        async def traced_authorize(request):
            calls.append("authorize:start")
            result = await authorize(request)
            calls.append("authorize:end")
            return result

        async def traced_capture(transaction_id, amount=None):
            calls.append("capture:start")
            return await capture(transaction_id, amount)

        monkeypatch.setattr(bank, "authorize", traced_authorize)
        monkeypatch.setattr(bank, "capture", traced_capture)

        session = await core.orchestrator.request_payment("T1", 100)
        await core.orchestrator.handle_method_detected("T1", session.id, "nfc")

        assert calls == ["authorize:start", "authorize:end", "capture:start"]

    async def test_ad_hoc_detection_opens_session(self, core, terminal):
        done = await core.orchestrator.handle_method_detected("T1", None, "nfc", {"amount": 2500})

        assert done.status == "completed"
        assert done.amount == 2500
        assert (await core.orchestrator.get_session(done.id)).status == "completed"

    async def test_ad_hoc_detection_uses_default_amount(self, core, terminal):
        done = await core.orchestrator.handle_method_detected("T1", None, "qr")
        assert done.amount == core.settings.DEFAULT_DETECTED_AMOUNT
        assert done.method == "qr"

    async def test_concurrent_sessions_are_independent(self, core, terminal, bank):
        bank.set_response_delay(20)
        first = await core.orchestrator.request_payment("T1", 100)
        second = await core.orchestrator.request_payment("T1", 200)

        a, b = await asyncio.gather(
            core.orchestrator.handle_method_detected("T1", first.id, "nfc"),
            core.orchestrator.handle_method_detected("T1", second.id, "qr"),
        )

        assert (a.status, a.amount, a.method) == ("completed", 100, "nfc")
        assert (b.status, b.amount, b.method) == ("completed", 200, "qr")
        assert a.bank_transaction_id != b.bank_transaction_id


class TestRejections:
    async def test_completed_session_cannot_be_reprocessed(self, core, terminal):
        session = await core.orchestrator.request_payment("T1", 100)
        await core.orchestrator.handle_method_detected("T1", session.id, "nfc")
        pushed = len(terminal.sent)

        with pytest.raises(InvalidTransition):
            await core.orchestrator.handle_method_detected("T1", session.id, "nfc")

        assert len(terminal.sent) == pushed
        assert (await core.orchestrator.get_session(session.id)).status == "completed"

    async def test_concurrent_detections_settle_once(self, core, terminal, bank, monkeypatch):
        authorized_for = []
        authorize = bank.authorize

        async def counted(request):
            authorized_for.append(request.payment_id)
            return await authorize(request)

        monkeypatch.setattr(bank, "authorize", counted)
        bank.set_response_delay(30)
        session = await core.orchestrator.request_payment("T1", 100)

        results = await asyncio.gather(
            core.orchestrator.handle_method_detected("T1", session.id, "nfc"),
            core.orchestrator.handle_method_detected("T1", session.id, "nfc"),
            return_exceptions=True,
        )

        rejected = [r for r in results if isinstance(r, InvalidTransition)]
        settled = [r for r in results if isinstance(r, PaymentSession)]
        assert len(rejected) == 1
        assert len(settled) == 1
        assert settled[0].status == "completed"
        assert authorized_for == [session.id]
        assert terminal.statuses() == ["processing", "completed"]

    async def test_authorization_released_when_settled_elsewhere(self, core, terminal, bank, monkeypatch):
        gate = asyncio.Event()
        issued = []
        authorize = bank.authorize

        async def held(request):
            await gate.wait()
            result = await authorize(request)
            issued.append(result.transaction_id)
            return result

        monkeypatch.setattr(bank, "authorize", held)
        session = await core.orchestrator.request_payment("T1", 100)
        detection = asyncio.create_task(core.orchestrator.handle_method_detected("T1", session.id, "nfc"))
        while (await core.orchestrator.get_session(session.id)).status != "processing":
            await asyncio.sleep(0.01)

        await core.orchestrator.handle_external_completion("T1", session.id, {"status": "completed"})
        gate.set()

        with pytest.raises(InvalidTransition):
            await detection
        assert (await core.orchestrator.get_session(session.id)).status == "completed"
        assert (await bank.get_transaction_status(issued[0])).status == "voided"
        assert terminal.statuses() == ["processing", "completed"]

    async def test_unknown_session(self, core, terminal):
        with pytest.raises(SessionNotFound):
            await core.orchestrator.handle_method_detected("T1", "pay_missing", "nfc")

    async def test_session_of_another_terminal(self, core, terminal):
        other = FakeConnection()
        await core.channel.register("T2", other)
        session = await core.orchestrator.request_payment("T2", 100)

        with pytest.raises(InvalidRequest):
            await core.orchestrator.handle_method_detected("T1", session.id, "nfc")
        assert (await core.orchestrator.get_session(session.id)).status == "pending"

    async def test_qr_signature_must_match(self, core, terminal):
        session = await core.orchestrator.request_payment("T1", 100, method="qr")

        with pytest.raises(InvalidRequest):
            await core.orchestrator.handle_method_detected("T1", session.id, "qr", {"signature": "forged"})
        assert (await core.orchestrator.get_session(session.id)).status == "pending"

        signature = core.orchestrator.qr_payload(session)["signature"]
        done = await core.orchestrator.handle_method_detected("T1", session.id, "qr", {"signature": signature})
        assert done.status == "completed"


class TestQrExpiry:
    async def test_payload_carries_signed_expiry(self, core, terminal):
        session = await core.orchestrator.request_payment("T1", 100, method="qr")
        [req] = terminal.of_type("payment_request")

        expires_at = core.orchestrator.qr_expires_at(session)
        assert req["qrPayload"]["expiresAt"] == expires_at.isoformat()
        assert not core.orchestrator.qr_expired(session)
        assert core.orchestrator.qr_expired(session, now=expires_at + timedelta(seconds=1))

    async def test_scan_within_ttl_completes(self, core, terminal):
        session = await core.orchestrator.request_payment("T1", 100, method="qr")
        signature = terminal.of_type("payment_request")[0]["qrPayload"]["signature"]

        done = await core.orchestrator.handle_method_detected("T1", session.id, "qr", {"signature": signature})
        assert done.status == "completed"

    async def test_expired_scan_fails_session(self, core, terminal, bank, monkeypatch):
        authorized_for = []

        async def counted(request):
            authorized_for.append(request.payment_id)

        monkeypatch.setattr(bank, "authorize", counted)
        session = await core.orchestrator.request_payment("T1", 100, method="qr")
        core.orchestrator.settings.QR_TTL_SECONDS = -1

        done = await core.orchestrator.handle_method_detected("T1", session.id, "qr")

        assert done.status == "failed"
        assert done.error_code == "QR004"
        assert authorized_for == []
        assert terminal.statuses() == ["failed"]
        assert terminal.of_type("payment_status")[0]["error"]["message"] == "QR payment expired"
        assert (await core.orchestrator.get_session(session.id)).error_code == "QR004"


class TestExternalOutcomes:
    async def test_external_completion(self, core, terminal):
        session = await core.orchestrator.request_payment("T1", 900, method="qr")
        done = await core.orchestrator.handle_external_completion(
            "T1", session.id, {"status": "completed", "bankTransactionId": "sbp-42"},
        )

        assert done.status == "completed"
        assert done.bank_transaction_id == "sbp-42"
        assert terminal.statuses() == ["completed"]

        with pytest.raises(InvalidTransition):
            await core.orchestrator.handle_external_completion("T1", session.id, {"status": "failed"})

    async def test_external_failure_keeps_code_verbatim(self, core, terminal):
        session = await core.orchestrator.request_payment("T1", 900)
        done = await core.orchestrator.handle_external_completion(
            "T1", session.id, {"status": "failed", "errorCode": "WALLET_17"},
        )

        assert done.status == "failed"
        assert done.error_code == "WALLET_17"
        error = terminal.of_type("payment_status")[-1]["error"]
        assert error["code"] == "WALLET_17"
        assert error["type"] == "system"

    async def test_method_failure(self, core, terminal):
        session = await core.orchestrator.request_payment("T1", 900, method="qr")
        done = await core.orchestrator.handle_method_failure("T1", session.id, "qr", "timeout")

        assert done.status == "failed"
        assert done.error_code == "QR004"
        assert terminal.of_type("payment_status")[-1]["error"]["message"] == "QR payment expired"

    async def test_method_failure_unknown_reason(self, core, terminal):
        session = await core.orchestrator.request_payment("T1", 900)
        with pytest.raises(InvalidRequest):
            await core.orchestrator.handle_method_failure("T1", session.id, "nfc", "meteor")
