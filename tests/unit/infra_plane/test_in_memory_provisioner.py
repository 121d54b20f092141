"""InMemoryProvisioner double tests: scripting and termination."""

from __future__ import annotations

import threading
import time

import pytest

from infra_plane.app.provisioning.errors import ExecutionError, LockContentionError
from infra_plane.app.provisioning.provisioner import InMemoryProvisioner, Provisioner


def test_satisfies_provisioner_protocol():
    assert isinstance(InMemoryProvisioner(), Provisioner)


class TestScripting:
    def test_failures_are_consumed_in_order(self):
        provisioner = InMemoryProvisioner()
        provisioner.contend('plan')
        provisioner.fail('plan')

        with pytest.raises(LockContentionError):
            provisioner.plan()
        with pytest.raises(ExecutionError, match='plan failed'):
            provisioner.plan()
        assert provisioner.plan() == 'tfplan'
        assert provisioner.count('plan') == 3


class TestTerminate:
    def test_interrupts_running_step(self):
        provisioner = InMemoryProvisioner(delays={'apply': 5.0})
        threading.Timer(0.05, provisioner.terminate).start()

        started = time.monotonic()
        with pytest.raises(ExecutionError, match='apply terminated'):
            provisioner.apply('tfplan')

        assert time.monotonic() - started < 2.0

    def test_terminate_between_steps_stops_next_wait(self):
        provisioner = InMemoryProvisioner(delays={'apply': 5.0})
        provisioner.plan()
        provisioner.terminate()

        started = time.monotonic()
        with pytest.raises(ExecutionError, match='apply terminated'):
            provisioner.apply('tfplan')

        assert time.monotonic() - started < 2.0

    def test_interrupted_wait_resets_for_later_steps(self):
        provisioner = InMemoryProvisioner(delays={'destroy': 0.05})
        provisioner.terminate()
        with pytest.raises(ExecutionError):
            provisioner.destroy()

        provisioner.destroy()

        assert provisioner.count('destroy') == 2
