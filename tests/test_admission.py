import threading

import pytest

from boxed_runner import AdmissionRefused
from boxed_runner.execution.admission import AdmissionGate, gate_for


def test_gate_refuses_when_full() -> None:
    gate = AdmissionGate(1)
    with gate.slot(timeout=0):
        assert gate.in_use == 1
        with pytest.raises(AdmissionRefused, match="1 sandbox slots busy"):
            with gate.slot(timeout=0.01):
                pass
    assert gate.in_use == 0


def test_gate_releases_slot_on_error() -> None:
    gate = AdmissionGate(1)
    with pytest.raises(RuntimeError):
        with gate.slot(timeout=0):
            raise RuntimeError("boom")
    with gate.slot(timeout=0):
        assert gate.in_use == 1


def test_gate_waits_for_a_free_slot() -> None:
    gate = AdmissionGate(1)
    holding = threading.Event()
    release = threading.Event()

    def _hold() -> None:
        with gate.slot(timeout=0):
            holding.set()
            release.wait(2)

    worker = threading.Thread(target=_hold)
    worker.start()
    holding.wait(2)
    threading.Timer(0.1, release.set).start()
    with gate.slot(timeout=2):
        assert gate.in_use == 1
    worker.join()


def test_zero_limit_is_unbounded() -> None:
    gate = AdmissionGate(0)
    with gate.slot(timeout=0), gate.slot(timeout=0), gate.slot(timeout=0):
        assert gate.in_use == 3


def test_gate_for_is_shared_per_limit() -> None:
    assert gate_for(3) is gate_for(3)
    assert gate_for(3) is not gate_for(2)
