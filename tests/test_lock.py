#!/usr/bin/env python3
"""
test_lock.py - Tests for the namespace lock.
"""
from __future__ import annotations

import subprocess
import sys
import textwrap

import pytest

from global_install.errors import NamespaceLocked
from global_install.lock import lock_for, namespace_lock


class TestNamespaceLock:
    def test_lock_file_in_state_dir(self, namespace):
        with namespace_lock(namespace, timeout=1) as lock:
            assert lock.is_locked
            assert namespace.state_dir.is_dir()
        assert not lock.is_locked

    def test_held_by_other_process_times_out(self, namespace):
        lock_path = lock_for(namespace).lock_file
        holder = subprocess.Popen(
            [sys.executable, "-c", textwrap.dedent(f"""
                import sys, time, filelock
                with filelock.FileLock({lock_path!r}):
                    print("held", flush=True)
                    sys.stdin.readline()
            """)],
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            text=True,
        )
        try:
            assert holder.stdout.readline().strip() == "held"
            with pytest.raises(NamespaceLocked) as exc:
                with namespace_lock(namespace, timeout=0.2):
                    pass
            assert exc.value.step == "lock"
        finally:
            holder.stdin.close()
            holder.wait(timeout=10)
