"""Tests for Settings and the pre-configuration log buffer."""

from __future__ import annotations

import io
import logging

import pytest
from pydantic import ValidationError

from orbit.config import Settings
from orbit.logs import LogBuffer


class TestSettings:
    def test_derived_paths(self, tmp_path):
        s = Settings(_env_file=None, base_path=tmp_path)
        assert s.agents_path == tmp_path / "agents"
        assert s.db_url == f"sqlite+aiosqlite:///{tmp_path / 'orbit.db'}"

    def test_eviction_interval_defaults_to_half_idle_timeout(self, tmp_path):
        s = Settings(_env_file=None, base_path=tmp_path, pool_idle_timeout=120)
        assert s.eviction_interval == 60

    def test_explicit_check_interval(self, tmp_path):
        s = Settings(_env_file=None, base_path=tmp_path, pool_idle_timeout=120, pool_check_interval=10)
        assert s.eviction_interval == 10

    def test_env_prefix(self, tmp_path, monkeypatch):
        monkeypatch.setenv("ORBIT_BASE_PATH", str(tmp_path))
        monkeypatch.setenv("ORBIT_STORAGE_BACKEND", "sqlite")
        s = Settings(_env_file=None)
        assert s.base_path == tmp_path
        assert s.storage_backend == "sqlite"

    def test_check_interval_cannot_exceed_idle_timeout(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, pool_idle_timeout=10, pool_check_interval=20)

    def test_non_positive_values_rejected(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, pool_idle_timeout=0)

    def test_unknown_backend_rejected(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, storage_backend="redis")


def _messages(stream: io.StringIO) -> list[str]:
    return [line.rsplit(" ", 1)[-1] for line in stream.getvalue().splitlines()]


def _hierarchy(level: int = logging.WARNING) -> tuple[logging.RootLogger, logging.Manager]:
    """A logger tree detached from the process root."""
    root = logging.RootLogger(level)
    return root, logging.Manager(root)


def _buffer(capacity: int = 100) -> tuple[LogBuffer, logging.Manager, logging.RootLogger]:
    root, manager = _hierarchy()
    buf = LogBuffer(manager.getLogger("orbit"), capacity=capacity, root=root)
    buf.install()
    return buf, manager, root


class TestLogBuffer:
    def test_flushes_in_original_order(self):
        buf, manager, _ = _buffer()
        log = manager.getLogger("orbit.runtime.pool")
        log.info("first")
        log.debug("second")
        log.warning("third")
        assert buf.pending == 3

        stream = io.StringIO()
        buf.configure("debug", handler=logging.StreamHandler(stream))

        assert _messages(stream) == ["first", "second", "third"]
        assert buf.pending == 0
        assert buf.configured

    def test_records_below_level_are_not_replayed(self):
        buf, manager, _ = _buffer()
        log = manager.getLogger("orbit")
        log.debug("quiet")
        log.error("loud")

        stream = io.StringIO()
        buf.configure("warning", handler=logging.StreamHandler(stream))
        assert _messages(stream) == ["loud"]

    def test_flushes_exactly_once(self):
        buf, manager, _ = _buffer()
        manager.getLogger("orbit").info("buffered")

        stream = io.StringIO()
        buf.configure("info", handler=logging.StreamHandler(stream))
        buf.configure("info", handler=logging.StreamHandler(stream))
        assert _messages(stream) == ["buffered"]

    def test_records_after_configure_go_straight_through(self):
        buf, manager, _ = _buffer()
        stream = io.StringIO()
        buf.configure("info", handler=logging.StreamHandler(stream))

        manager.getLogger("orbit.scheduler").info("live")
        assert _messages(stream) == ["live"]
        assert buf.pending == 0

    def test_install_after_configure_is_noop(self):
        root, manager = _hierarchy()
        buf = LogBuffer(manager.getLogger("orbit"), root=root)
        stream = io.StringIO()
        buf.configure("info", handler=logging.StreamHandler(stream))
        buf.install()
        manager.getLogger("orbit").info("direct")
        assert buf.pending == 0
        assert _messages(stream) == ["direct"]

    def test_buffer_is_bounded(self):
        buf, manager, _ = _buffer(capacity=10)
        log = manager.getLogger("orbit")
        for i in range(25):
            log.info("m%d", i)
        assert buf.pending == 10
        assert buf.dropped == 15

        stream = io.StringIO()
        buf.configure("info", handler=logging.StreamHandler(stream))
        lines = stream.getvalue().splitlines()
        assert "15 early log record(s) dropped" in lines[0]
        assert _messages(stream)[1:] == [f"m{i}" for i in range(15, 25)]
        assert buf.dropped == 0


class TestHostConfiguredLogging:
    def test_host_configured_before_install(self):
        root, manager = _hierarchy(logging.INFO)
        stream = io.StringIO()
        root.addHandler(logging.StreamHandler(stream))
        orbit_logger = manager.getLogger("orbit")
        buf = LogBuffer(orbit_logger, root=root)
        buf.install()

        log = manager.getLogger("orbit.runtime.pool")
        for i in range(1000):
            log.debug("noise %d", i)
        log.info("visible")

        assert buf.pending == 0
        assert stream.getvalue().splitlines() == ["visible"]
        assert orbit_logger.level == logging.NOTSET
        assert orbit_logger.propagate

    def test_host_configured_after_install(self):
        buf, manager, root = _buffer()
        root.setLevel(logging.INFO)
        log = manager.getLogger("orbit.runtime.pool")
        log.debug("early debug")
        log.info("early info")
        assert buf.pending == 2

        stream = io.StringIO()
        root.addHandler(logging.StreamHandler(stream))
        for i in range(1000):
            log.debug("noise %d", i)
        log.info("live")
        log.info("after")

        assert stream.getvalue().splitlines() == ["early info", "live", "after"]
        assert buf.pending == 0
        assert buf.configured
        assert manager.getLogger("orbit").propagate
