import time
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
import requests

from errors import NodeUnavailable
from tipjar_client import (
    GENERIC_FAILURE_MESSAGE,
    INVALID_AMOUNT_MESSAGE,
    NODE_UNAVAILABLE_MESSAGE,
    LifecycleState,
    PaymentLifecycle,
    TipJarAPIError,
    TipJarClient,
    _error_message,
)

INVOICE = {"paymentRequest": "lnbc21n1mockabc", "paymentHash": "mock_1_abc"}


@pytest.fixture
def api():
    api = MagicMock(spec=TipJarClient)
    api.create_invoice.return_value = dict(INVOICE)
    api.check_invoice.return_value = {"paid": False, "preimage": None}
    return api


@pytest.fixture
def flow(api, scheduler):
    with PaymentLifecycle(api, scheduler=scheduler, poll_interval=3, celebration_seconds=5) as flow:
        yield flow


def test_initial_state(flow):
    assert flow.state is LifecycleState.SELECTING
    assert flow.amount == 21
    assert flow.payment_hash == ""
    assert flow.error == ""


def test_amount_selection(flow):
    flow.select_amount(1000)
    assert flow.amount == 1000
    flow.select_amount("custom")
    assert flow.amount == 0
    assert flow.set_custom_amount("1234") is True
    assert flow.set_custom_amount("12a") is False
    assert flow.amount == 1234
    with pytest.raises(ValueError):
        flow.select_amount(7)


def test_generate_starts_polling(flow, api, scheduler):
    assert flow.generate_invoice() is True

    api.create_invoice.assert_called_once_with(21, "Lightning Tip Jar")
    assert flow.state is LifecycleState.AWAITING_PAYMENT
    assert flow.payment_request == INVOICE["paymentRequest"]
    [job] = scheduler.jobs_with_trigger("interval")
    assert job.kwargs["seconds"] == 3


def test_generate_sends_memo(flow, api):
    flow.generate_invoice(amount=404, memo="great stream")
    api.create_invoice.assert_called_once_with(404, "great stream")
    assert flow.amount == 404


@pytest.mark.parametrize("amount", [0, -5, True, 2.5, "21"])
def test_invalid_amount_makes_no_call(flow, api, amount):
    assert flow.generate_invoice(amount=amount) is False
    assert flow.error == INVALID_AMOUNT_MESSAGE
    assert flow.state is LifecycleState.SELECTING
    api.create_invoice.assert_not_called()


def test_empty_custom_amount_makes_no_call(flow, api):
    flow.select_amount("custom")
    assert flow.generate_invoice() is False
    api.create_invoice.assert_not_called()


def test_single_invoice_in_flight(flow, api):
    nested = []

    def create(amount, memo):
        assert flow.is_generating
        nested.append(flow.generate_invoice())
        return dict(INVOICE)

    api.create_invoice.side_effect = create

    assert flow.generate_invoice() is True
    assert nested == [False]
    assert api.create_invoice.call_count == 1
    assert not flow.is_generating


def test_generate_failure_stays_selecting(flow, api, scheduler):
    api.create_invoice.side_effect = TipJarAPIError(NODE_UNAVAILABLE_MESSAGE, status=503)

    assert flow.generate_invoice() is False

    assert flow.state is LifecycleState.SELECTING
    assert flow.error == NODE_UNAVAILABLE_MESSAGE
    assert not flow.is_generating
    assert scheduler.jobs == {}

    # and the user can retry
    api.create_invoice.side_effect = None
    assert flow.generate_invoice() is True
    assert flow.error == ""


def test_poll_until_paid(flow, api, scheduler):
    flow.generate_invoice()

    scheduler.fire("interval")
    assert flow.state is LifecycleState.AWAITING_PAYMENT

    api.check_invoice.side_effect = requests.ConnectionError("flaky")
    scheduler.fire("interval")
    assert flow.state is LifecycleState.AWAITING_PAYMENT

    api.check_invoice.side_effect = None
    api.check_invoice.return_value = {"paid": True, "preimage": "pre"}
    scheduler.fire("interval")

    assert flow.state is LifecycleState.SETTLED
    assert flow.preimage == "pre"
    assert flow.celebrating is True
    assert scheduler.jobs_with_trigger("interval") == []
    [celebration] = scheduler.jobs_with_trigger("date")

    celebration.func()
    assert flow.celebrating is False
    assert flow.state is LifecycleState.SETTLED


def test_cancel_stops_polling(flow, api, scheduler):
    flow.generate_invoice()
    flow.cancel()

    assert flow.state is LifecycleState.SELECTING
    assert flow.payment_hash == ""
    assert scheduler.jobs == {}
    assert flow.poll_once() is False
    api.check_invoice.assert_not_called()


def test_late_settlement_after_cancel_is_ignored(flow, api):
    flow.generate_invoice()
    hash_before = flow.payment_hash
    flow.cancel()
    assert flow._settle(hash_before, "pre") is False
    assert flow.state is LifecycleState.SELECTING


def test_reset_after_settlement(flow, api, scheduler):
    flow.select_amount(1000)
    flow.generate_invoice(memo="hi")
    api.check_invoice.return_value = {"paid": True, "preimage": None}
    flow.poll_once()

    flow.reset()

    assert flow.state is LifecycleState.SELECTING
    assert flow.amount == 21
    assert flow.memo == ""
    assert flow.celebrating is False
    assert scheduler.jobs == {}


def test_simulate_payment(flow, api):
    assert flow.simulate_payment() is False
    flow.generate_invoice()
    api.check_invoice.return_value = {"paid": True, "preimage": "sim"}

    assert flow.simulate_payment() is True

    api.check_invoice.assert_called_with(INVOICE["paymentHash"], simulate=True)
    assert flow.state is LifecycleState.SETTLED


def test_close_removes_jobs(api, scheduler):
    flow = PaymentLifecycle(api, scheduler=scheduler)
    flow.generate_invoice()
    flow.close()
    assert scheduler.jobs == {}
    assert flow.generate_invoice() is False


def test_on_change_errors_do_not_break_the_flow(api, scheduler):
    def explode(_):
        raise RuntimeError("render failed")

    flow = PaymentLifecycle(api, scheduler=scheduler, on_change=explode)
    assert flow.generate_invoice() is True
    flow.close()


def _fake_response(status_code, body=None):
    def json():
        if body is None:
            raise ValueError("no json")
        return body

    return SimpleNamespace(status_code=status_code, json=json)


@pytest.mark.parametrize(
    "response, message",
    [
        (_fake_response(503, {"error": "anything"}), NODE_UNAVAILABLE_MESSAGE),
        (_fake_response(520), NODE_UNAVAILABLE_MESSAGE),
        (_fake_response(500, {"error": "Unable to connect to http://node"}), NODE_UNAVAILABLE_MESSAGE),
        (_fake_response(400, {"error": "Invalid amount. Please provide a positive number."}),
         "Invalid amount. Please provide a positive number."),
        (_fake_response(500), GENERIC_FAILURE_MESSAGE),
    ],
)
def test_error_message(response, message):
    assert _error_message(response) == message


def test_client_network_failure():
    session = MagicMock()
    session.post.side_effect = requests.ConnectionError("refused")
    with pytest.raises(TipJarAPIError) as exc:
        TipJarClient("http://tipjar.test", session=session).create_invoice(21, "x")
    assert exc.value.message == GENERIC_FAILURE_MESSAGE


# --- against the Flask app ---

def test_end_to_end_simulated_tip(flow_session_client, scheduler):
    flow = PaymentLifecycle(flow_session_client, scheduler=scheduler)
    flow.select_amount(404)

    assert flow.generate_invoice() is True
    assert flow.payment_hash.startswith("mock_")

    scheduler.fire("interval")
    assert flow.state is LifecycleState.AWAITING_PAYMENT

    assert flow.simulate_payment() is True
    assert flow.state is LifecycleState.SETTLED
    assert flow.preimage.startswith("mock_preimage_")
    flow.close()


def test_end_to_end_node_unavailable(flow_session_client, scheduler, mock_backend, monkeypatch):
    def down(amount_sats, memo):
        raise NodeUnavailable()

    monkeypatch.setattr(mock_backend, "create_invoice", down)
    flow = PaymentLifecycle(flow_session_client, scheduler=scheduler)

    assert flow.generate_invoice() is False
    assert flow.error == NODE_UNAVAILABLE_MESSAGE
    assert flow.state is LifecycleState.SELECTING
    flow.close()


def test_end_to_end_mode_toggle(flow_session_client):
    assert flow_session_client.get_mode() is True
    assert flow_session_client.set_mode(False) is False
    assert flow_session_client.get_mode() is False


@pytest.fixture
def flow_session_client(flask_session):
    return TipJarClient("http://tipjar.test", session=flask_session)


# --- real scheduler ---

def test_background_scheduler_polls_and_celebrates(api):
    calls = []

    def check(payment_hash, simulate=False):
        calls.append(payment_hash)
        return {"paid": len(calls) >= 2, "preimage": "pre"}

    api.check_invoice.side_effect = check
    with PaymentLifecycle(api, poll_interval=0.05, celebration_seconds=0.1) as flow:
        flow.generate_invoice()

        deadline = time.monotonic() + 5
        while flow.state is not LifecycleState.SETTLED and time.monotonic() < deadline:
            time.sleep(0.02)
        assert flow.state is LifecycleState.SETTLED

        while flow.celebrating and time.monotonic() < deadline:
            time.sleep(0.02)
        assert flow.celebrating is False

    assert len(calls) >= 2
    assert flow.preimage == "pre"
