"""
Tests for the worker registry.
"""

import os
import time

import pytest

from snapshot_service.capture.registry import WorkerRegistry
from snapshot_service.state.models import WorkerStatus
from snapshot_service.utils.config import Config


class TestRegistration:
    """Test register / unregister."""

    def test_register_creates_worker_and_spawns(self, registry, spawner):
        sanitized = registry.register('abc')

        assert sanitized == 'abc'
        assert 'abc' in registry
        assert len(spawner.processes) == 1
        assert registry.active_count() == 1

    def test_register_twice_does_not_spawn_again(self, registry, spawner, clock):
        registry.register('abc')
        clock.advance(60)

        registry.register('abc')

        assert len(registry) == 1
        assert len(spawner.processes) == 1

    def test_register_refreshes_ttl(self, registry, clock):
        registry.register('abc')
        clock.advance(60)

        registry.register('abc')

        assert registry.get('abc').idle_seconds == 0

    def test_register_sanitizes_before_use(self, registry, spawner, tmp_path):
        sanitized = registry.register('str/../../etc')

        assert sanitized == 'stretc'
        assert 'stretc' in registry
        cmd = spawner.last.cmd
        assert cmd[-1] == str(tmp_path / 'snapshots' / 'stretc.jpg')
        assert cmd[cmd.index('-i') + 1] == 'http://srs.local:8080/live/stretc.m3u8'
        assert not any('..' in arg for arg in cmd)

    def test_register_with_hint_uses_stream_name(self, registry, spawner):
        registry.register('abc', 'https://host/whep/?app=live&stream=X1')

        cmd = spawner.last.cmd
        source = cmd[cmd.index('-i') + 1]
        assert source.endswith('/live/X1.m3u8')
        assert 'abc' not in source

    def test_register_unusable_id(self, registry, spawner):
        assert registry.register('../..') is None
        assert len(registry) == 0
        assert spawner.processes == []

    def test_register_never_raises_on_spawn_failure(self, registry, spawner):
        spawner.fail = True

        assert registry.register('abc') == 'abc'

        info = registry.get('abc')
        assert not info.is_active
        assert info.restart_count == 1
        assert info.status == WorkerStatus.BACKOFF

    def test_register_hint_with_control_characters(self, registry, spawner):
        hint = 'https://ho\x00st:1990/rtc/v1/whep/?app=live&stream=X1'

        assert registry.register('abc', hint) == 'abc'

        cmd = spawner.last.cmd
        assert cmd[cmd.index('-i') + 1] == 'http://srs.local:8080/live/abc.m3u8'
        assert registry.get('abc').is_active

    def test_register_never_raises_on_rejected_arguments(self, registry, spawner, scheduler):
        spawner.error = ValueError("embedded null byte")

        assert registry.register('abc') == 'abc'

        assert registry.get('abc').status == WorkerStatus.BACKOFF
        assert scheduler.delays() == [1.0]

    def test_unregister_stops_process(self, registry, spawner):
        registry.register('abc')
        process = spawner.last

        assert registry.unregister('abc')

        assert process.terminated
        assert 'abc' not in registry
        assert registry.active_count() == 0

    def test_unregister_sanitizes(self, registry):
        registry.register('str/../../etc')

        assert registry.unregister('str/../../etc')
        assert len(registry) == 0

    def test_unregister_unknown_is_noop(self, registry):
        assert not registry.unregister('nope')
        assert not registry.unregister('nope')


class TestRestartPolicy:
    """Test crash restarts through the registry."""

    def test_exit_restarts_once_after_backoff(self, registry, spawner, scheduler, exit_process):
        registry.register('abc')

        exit_process('abc')

        assert registry.active_count() == 0
        assert scheduler.delays() == [1.0]
        assert len(spawner.processes) == 1

        scheduler.fire_next()

        assert len(spawner.processes) == 2
        assert registry.active_count() == 1
        assert scheduler.pending() == []

    def test_backoff_grows_exponentially(self, registry, scheduler, exit_process):
        registry.register('abc')

        for _ in range(4):
            exit_process('abc')
            scheduler.fire_next()

        assert scheduler.delays() == [1.0, 2.0, 4.0, 8.0]

    def test_gives_up_after_max_restarts(self, registry, spawner, scheduler, exit_process):
        registry.register('abc')

        for _ in range(4):
            exit_process('abc')
            scheduler.fire_next()

        assert len(spawner.processes) == 5

        exit_process('abc')

        assert scheduler.pending() == []
        assert len(spawner.processes) == 5
        info = registry.get('abc')
        assert info.restart_count == 5
        assert info.status == WorkerStatus.EXHAUSTED

    def test_exhausted_worker_ignores_reregistration(self, registry, spawner, scheduler, exit_process):
        registry.register('abc')
        for _ in range(4):
            exit_process('abc')
            scheduler.fire_next()
        exit_process('abc')

        registry.register('abc')

        assert len(spawner.processes) == 5

    def test_exhausted_worker_restarts_after_unregister(self, registry, spawner, scheduler, exit_process):
        registry.register('abc')
        for _ in range(4):
            exit_process('abc')
            scheduler.fire_next()
        exit_process('abc')

        registry.unregister('abc')
        registry.register('abc')

        assert len(spawner.processes) == 6
        assert registry.get('abc').restart_count == 1

    def test_pending_restart_dropped_after_unregister(self, registry, spawner, scheduler, exit_process):
        registry.register('abc')
        exit_process('abc')

        registry.unregister('abc')
        scheduler.fire_all()

        assert len(spawner.processes) == 1
        assert 'abc' not in registry

    def test_pending_restart_does_not_hijack_new_worker(self, registry, spawner, scheduler, exit_process):
        registry.register('abc')
        exit_process('abc')
        registry.unregister('abc')
        registry.register('abc')

        scheduler.fire_all()

        assert len(spawner.processes) == 2
        assert registry.get('abc').restart_count == 1

    def test_exit_after_unregister_is_ignored(self, registry, spawner, scheduler):
        registry.register('abc')
        worker = registry._workers['abc']
        watcher = worker._watcher

        registry.unregister('abc')
        watcher.join(timeout=5)

        restart_calls = [delay for delay in scheduler.delays() if delay != 5.0]
        assert restart_calls == []
        assert len(spawner.processes) == 1

    def test_spawn_failures_back_off(self, registry, spawner, scheduler):
        spawner.fail = True
        registry.register('abc')

        for _ in range(4):
            scheduler.fire_next()

        assert scheduler.delays() == [1.0, 2.0, 4.0, 8.0]
        assert scheduler.pending() == []
        assert registry.get('abc').status == WorkerStatus.EXHAUSTED

    def test_missing_ffmpeg_binary(self, tmp_path, scheduler):
        config = Config({
            'snapshots': {'dir': str(tmp_path / 'snapshots')},
            'capture': {'ffmpeg_path': str(tmp_path / 'no-such-ffmpeg')},
        })
        registry = WorkerRegistry(config, scheduler=scheduler)

        assert registry.register('abc') == 'abc'

        assert registry.active_count() == 0
        assert scheduler.delays() == [1.0]
        registry.shutdown()


class TestRecoverAndExpire:
    """Test health-driven mutations."""

    def test_recover_resets_counter(self, registry, spawner, scheduler, exit_process):
        registry.register('abc')
        for _ in range(3):
            exit_process('abc')
            scheduler.fire_next()
        old = spawner.last
        assert registry.get('abc').restart_count == 4

        assert registry.recover('abc')

        assert old.terminated
        assert spawner.last is not old
        assert registry.get('abc').restart_count == 1
        assert registry.active_count() == 1

    def test_recover_inactive_worker_is_noop(self, registry, spawner, exit_process):
        registry.register('abc')
        exit_process('abc')

        assert not registry.recover('abc')
        assert len(spawner.processes) == 1

    def test_expire_respects_ttl(self, registry, clock):
        registry.register('abc')
        clock.advance(100)

        assert not registry.expire('abc')

        clock.advance(21)

        assert registry.expire('abc')
        assert 'abc' not in registry


class TestSnapshotLookup:
    """Test snapshot path and freshness lookups."""

    def test_resolve_snapshot_path(self, registry, tmp_path):
        assert registry.resolve_snapshot_path('a/b') == tmp_path / 'snapshots' / 'ab.jpg'

    def test_has_recent_snapshot(self, registry):
        path = registry.resolve_snapshot_path('abc')
        assert not registry.has_recent_snapshot('abc', 60)

        path.write_bytes(b'jpeg')
        assert registry.has_recent_snapshot('abc', 60)

        old = time.time() - 120
        os.utime(path, (old, old))
        assert not registry.has_recent_snapshot('abc', 60)

    def test_snapshot_dir_created_on_init(self, registry, tmp_path):
        assert (tmp_path / 'snapshots').is_dir()

    def test_workers_listing(self, registry):
        registry.register('a')
        registry.register('b')

        infos = {info.stream_id: info for info in registry.workers()}

        assert set(infos) == {'a', 'b'}
        assert all(info.status == WorkerStatus.RUNNING for info in infos.values())


class TestShutdown:
    """Test shutdown."""

    def test_shutdown_with_no_workers(self, registry):
        registry.shutdown()
        registry.shutdown()

        assert len(registry) == 0

    def test_shutdown_stops_everything(self, registry, spawner):
        registry.register('a')
        registry.register('b')

        registry.shutdown()

        assert all(process.terminated for process in spawner.processes)
        assert len(registry) == 0
        assert registry.active_count() == 0

    def test_shutdown_kills_unresponsive_process(self, tmp_path, spawner, scheduler):
        config = Config({
            'snapshots': {'dir': str(tmp_path / 'snapshots')},
            'workers': {'stop_timeout': 0.1},
        })
        registry = WorkerRegistry(config, spawn=spawner, scheduler=scheduler)
        spawner.ignore_term = True
        registry.register('abc')

        registry.shutdown()

        assert spawner.last.terminated
        assert spawner.last.killed

    def test_register_after_shutdown_is_ignored(self, registry, spawner):
        registry.shutdown()

        assert registry.register('abc') is None
        assert spawner.processes == []

    def test_shutdown_stops_health_monitor(self, tmp_path, spawner, scheduler):
        config = Config({
            'snapshots': {'dir': str(tmp_path / 'snapshots')},
            'health': {'check_interval': 0.05},
        })
        registry = WorkerRegistry(config, spawn=spawner, scheduler=scheduler)

        registry.start_health_monitor()
        assert registry.monitor_running

        registry.shutdown()

        assert not registry.monitor_running
