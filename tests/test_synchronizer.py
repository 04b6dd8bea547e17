"""Tests for the state synchronizer."""

import threading
from pathlib import Path

import pytest

import sfconfig_sync
from sfconfig_adapters import ClaudeSettingsAdapter, GeminiAdapter
from sfconfig_backup import BackupService
from sfconfig_sync import ConfigSynchronizer, describe_write_error
from tests.conftest import AlphaAdapter, BetaAdapter, read_json, write_json


@pytest.fixture
def alpha_path(fake_home):
    return fake_home / '.alpha' / 'config.json'


@pytest.fixture
def beta_path(fake_home):
    return fake_home / '.beta' / 'settings.json'


class TestInitialize:
    def test_missing_files_are_not_detected(self, synchronizer, events):
        synchronizer.initialize(watch=False)
        state = synchronizer.get_state()

        assert set(state) == {'alpha', 'beta'}
        assert state['alpha'] == {'_meta': {
            'engine': 'alpha',
            'name': 'Alpha CLI',
            'configPath': str(synchronizer.adapters['alpha'].get_config_path()),
            'lastModified': '1970-01-01T00:00:00.000Z',
            'detected': False,
        }}
        assert len(events) == 1
        assert events[0] == state

    def test_reads_existing_files(self, synchronizer, alpha_path):
        write_json(alpha_path, {'name': 'x', 'tags': ['a']})
        synchronizer.initialize(watch=False)
        entry = synchronizer.get_state()['alpha']
        assert entry['name'] == 'x'
        assert entry['tags'] == ['a']
        assert entry['_meta']['detected'] is True
        assert entry['_meta']['lastModified'] != '1970-01-01T00:00:00.000Z'

    def test_unreadable_file_degrades_to_not_detected(self, synchronizer, alpha_path, beta_path):
        alpha_path.parent.mkdir(parents=True)
        alpha_path.write_text('{oops')
        write_json(beta_path, {'count': 1})

        synchronizer.initialize(watch=False)
        state = synchronizer.get_state()
        assert state['alpha']['_meta']['detected'] is False
        assert state['beta']['count'] == 1

    def test_snapshot_is_a_copy(self, synchronizer, alpha_path):
        write_json(alpha_path, {'name': 'x', 'nested': {'k': 1}})
        synchronizer.initialize(watch=False)
        snapshot = synchronizer.get_state()
        snapshot['alpha']['nested']['k'] = 99
        assert synchronizer.get_state()['alpha']['nested'] == {'k': 1}

    def test_duplicate_engine_ids_rejected(self, fake_home):
        with pytest.raises(ValueError, match='alpha'):
            ConfigSynchronizer(adapters=[AlphaAdapter(), AlphaAdapter()])


class TestPatch:
    def test_end_to_end_creates_file(self, synchronizer, alpha_path):
        synchronizer.initialize(watch=False)
        result = synchronizer.patch({'alpha': {'name': 'x', 'tags': ['a', 'b']}})

        assert result.success
        assert result.errors == []
        assert read_json(alpha_path) == {'name': 'x', 'tags': ['a', 'b']}
        assert synchronizer.get_state()['alpha']['_meta']['detected'] is True

    def test_not_detected_engine_warns(self, synchronizer, alpha_path):
        synchronizer.initialize(watch=False)
        result = synchronizer.patch({'alpha': {'name': 'x'}})
        assert result.success
        assert result.warnings == [
            'Configuration file for "alpha" was not detected. Changes may not persist.']
        assert alpha_path.exists()

    def test_validation_blocks_write(self, synchronizer, alpha_path, events, backup_dir):
        write_json(alpha_path, {'name': 'x'})
        synchronizer.initialize(watch=False)
        before = alpha_path.read_bytes()
        state_before = synchronizer.get_state()

        result = synchronizer.patch({'alpha': {'name': 5}})

        assert not result.success
        assert len(result.errors) >= 1
        assert any('name' in error for error in result.errors)
        assert alpha_path.read_bytes() == before
        assert synchronizer.get_state() == state_before
        assert synchronizer.list_backups('alpha') == []
        assert len(events) == 1

    def test_backup_before_write(self, synchronizer, alpha_path):
        write_json(alpha_path, {'name': 'before', 'tags': ['t']})
        before = alpha_path.read_text()
        synchronizer.initialize(watch=False)

        assert synchronizer.patch({'alpha': {'name': 'after'}}).success

        backups = synchronizer.list_backups('alpha')
        assert len(backups) == 1
        assert backups[0].data == {'name': 'before', 'tags': ['t']}
        assert backups[0].original_path == str(alpha_path)

        assert synchronizer.restore_backup(backups[0].path)
        assert alpha_path.read_text() == before
        assert synchronizer.get_state()['alpha']['name'] == 'before'

    def test_partial_multi_engine_patch(self, synchronizer, alpha_path, events):
        synchronizer.initialize(watch=False)
        result = synchronizer.patch({'alpha': {'name': 'ok'}, 'gamma': {'x': 1}})

        assert not result.success
        assert result.errors == ['Engine "gamma" is not supported. Available engines: alpha, beta']
        assert read_json(alpha_path) == {'name': 'ok'}
        assert synchronizer.get_state()['alpha']['name'] == 'ok'
        # Only fully successful patches are broadcast
        assert len(events) == 1

    def test_one_invalid_engine_does_not_block_another(self, synchronizer, alpha_path, beta_path, events):
        synchronizer.initialize(watch=False)
        result = synchronizer.patch({'alpha': {'name': 'ok'}, 'beta': {'count': 'many'}})

        assert not result.success
        assert len(result.errors) == 1
        assert result.errors[0].startswith('Beta CLI: /count: ')
        assert read_json(alpha_path) == {'name': 'ok'}
        assert not beta_path.exists()
        assert synchronizer.get_state()['alpha']['name'] == 'ok'
        assert len(events) == 1

    def test_merge_and_delete(self, synchronizer, alpha_path):
        write_json(alpha_path, {'name': 'x', 'opts': {'a': 1, 'b': 2}, 'servers': {'s1': {}}})
        synchronizer.initialize(watch=False)

        result = synchronizer.patch({'alpha': {'opts': {'a': None, 'c': 3}, 'servers': {'s2': {'url': 'u'}}}})

        assert result.success
        assert read_json(alpha_path) == {'name': 'x', 'opts': {'b': 2, 'c': 3}, 'servers': {'s2': {'url': 'u'}}}

    def test_reserved_keys_are_ignored(self, synchronizer, alpha_path):
        synchronizer.initialize(watch=False)
        snapshot = synchronizer.get_state()['alpha']
        snapshot['name'] = 'x'

        result = synchronizer.patch({'alpha': snapshot, '_meta': {'ignored': True}})

        assert result.success
        assert read_json(alpha_path) == {'name': 'x'}
        assert '_meta' not in synchronizer.state['alpha'].data

    def test_non_object_engine_patch(self, synchronizer):
        synchronizer.initialize(watch=False)
        result = synchronizer.patch({'alpha': ['not', 'an', 'object']})
        assert not result.success
        assert result.errors == ['Alpha CLI: patch must be an object, got list']

    def test_non_object_patch(self, synchronizer):
        synchronizer.initialize(watch=False)
        assert not synchronizer.patch(['alpha']).success

    def test_backup_failure_is_a_warning(self, synchronizer, alpha_path, monkeypatch):
        write_json(alpha_path, {'name': 'x'})
        synchronizer.initialize(watch=False)

        def broken_backup(*args, **kwargs):
            raise OSError('disk full')

        monkeypatch.setattr(synchronizer.backup_service, 'create_backup', broken_backup)
        result = synchronizer.patch({'alpha': {'name': 'y'}})

        assert result.success
        assert result.warnings == ['Failed to create backup for Alpha CLI: disk full']
        assert read_json(alpha_path) == {'name': 'y'}

    def test_write_failure_is_classified(self, synchronizer, alpha_path, monkeypatch, events):
        write_json(alpha_path, {'name': 'x'})
        synchronizer.initialize(watch=False)

        def denied(data):
            raise PermissionError(13, 'Permission denied')

        monkeypatch.setattr(synchronizer.adapters['alpha'], 'write', denied)
        result = synchronizer.patch({'alpha': {'name': 'y'}})

        assert not result.success
        assert result.errors == [
            'Permission denied writing to Alpha CLI configuration. Check file permissions.']
        assert synchronizer.get_state()['alpha']['name'] == 'x'
        assert len(events) == 1

    def test_result_to_dict(self, synchronizer):
        synchronizer.initialize(watch=False)
        result = synchronizer.patch({'alpha': {'name': 'x'}})
        assert result.to_dict() == {'success': True, 'errors': [], 'warnings': result.warnings}


class TestDescribeWriteError:
    @pytest.mark.parametrize('error, expected', [
        (FileNotFoundError('gone'), 'Configuration file not found for Alpha CLI. File: '),
        (ValueError('bad value'), 'Invalid JSON format for Alpha CLI: bad value'),
        (RuntimeError('boom'), 'Alpha CLI: boom'),
    ])
    def test_messages(self, fake_home, error, expected):
        assert describe_write_error(AlphaAdapter(), error).startswith(expected)


class TestFileChanges:
    def test_external_edit_is_reconciled(self, synchronizer, alpha_path, events):
        write_json(alpha_path, {'name': 'x'})
        synchronizer.initialize(watch=False)

        write_json(alpha_path, {'name': 'changed externally'})
        assert synchronizer.handle_file_change('alpha') is True

        assert synchronizer.get_state()['alpha']['name'] == 'changed externally'
        assert events[-1]['alpha']['name'] == 'changed externally'

    def test_unchanged_file_is_ignored(self, synchronizer, alpha_path, events):
        write_json(alpha_path, {'name': 'x'})
        synchronizer.initialize(watch=False)
        assert synchronizer.handle_file_change('alpha') is False
        assert len(events) == 1

    def test_own_write_is_ignored(self, synchronizer, alpha_path, events):
        synchronizer.initialize(watch=False)
        synchronizer.patch({'alpha': {'name': 'x'}})
        count = len(events)
        assert synchronizer.handle_file_change('alpha') is False
        assert len(events) == count

    def test_deleted_file_becomes_not_detected(self, synchronizer, alpha_path):
        write_json(alpha_path, {'name': 'x'})
        synchronizer.initialize(watch=False)
        alpha_path.unlink()

        assert synchronizer.handle_file_change('alpha') is True
        entry = synchronizer.get_state()['alpha']
        assert entry['_meta']['detected'] is False
        assert 'name' not in entry

    def test_corrupt_file_keeps_last_known_good(self, synchronizer, alpha_path):
        write_json(alpha_path, {'name': 'x'})
        synchronizer.initialize(watch=False)
        alpha_path.write_text('{"name": "trunc')

        assert synchronizer.handle_file_change('alpha') is False
        assert synchronizer.get_state()['alpha']['name'] == 'x'

    def test_unknown_engine(self, synchronizer):
        synchronizer.initialize(watch=False)
        assert synchronizer.handle_file_change('gamma') is False


class TestRestore:
    def test_failed_restore_leaves_state(self, synchronizer, tmp_path, events):
        synchronizer.initialize(watch=False)
        assert synchronizer.restore_backup(tmp_path / 'missing.json') is False
        assert len(events) == 1

    def test_restore_publishes_refreshed_state(self, synchronizer, alpha_path, events):
        write_json(alpha_path, {'name': 'one'})
        synchronizer.initialize(watch=False)
        synchronizer.patch({'alpha': {'name': 'two'}})

        backup = synchronizer.list_backups('alpha')[0]
        assert synchronizer.restore_backup(backup.path)
        assert events[-1]['alpha']['name'] == 'one'

    def test_restore_removes_file_created_after_backup(self, synchronizer, alpha_path):
        synchronizer.initialize(watch=False)
        assert synchronizer.patch({'alpha': {'name': 'new'}}).success
        assert alpha_path.exists()

        backup = synchronizer.list_backups('alpha')[0]
        assert synchronizer.restore_backup(backup.path)
        assert not alpha_path.exists()
        assert synchronizer.get_state()['alpha']['_meta']['detected'] is False

    def test_layered_restore_puts_each_layer_back(self, fake_home, settings, backup_dir):
        global_path = write_json(fake_home / '.claude' / 'settings.json', {'model': 'g'})
        local_path = write_json(Path.cwd() / '.claude' / 'settings.local.json', {'env': {'SECRET': '1'}})
        shared_path = Path.cwd() / '.claude' / 'settings.json'
        before = (global_path.read_text(), local_path.read_text())

        with ConfigSynchronizer(adapters=[ClaudeSettingsAdapter()], backup_service=BackupService(backup_dir),
                                settings=settings) as sync:
            sync.initialize(watch=False)
            assert sync.patch({'claude-settings': {'model': 'x'}}).success
            assert read_json(global_path) == {'model': 'x'}

            backup = sync.list_backups('claude-settings')[0]
            assert sync.restore_backup(backup.path)
            assert sync.get_state()['claude-settings']['model'] == 'g'

        assert (global_path.read_text(), local_path.read_text()) == before
        assert 'SECRET' not in global_path.read_text()
        assert not shared_path.exists()


class TestSubscriptions:
    def test_failing_subscriber_does_not_affect_others(self, synchronizer):
        received = []

        def broken(state):
            raise RuntimeError('subscriber bug')

        synchronizer.subscribe(broken)
        synchronizer.subscribe(received.append)
        synchronizer.initialize(watch=False)
        synchronizer.patch({'alpha': {'name': 'x'}})

        assert len(received) == 2

    def test_unsubscribe(self, synchronizer):
        received = []
        unsubscribe = synchronizer.subscribe(received.append)
        assert unsubscribe() is True
        synchronizer.initialize(watch=False)
        assert received == []
        assert synchronizer.unsubscribe(received.append) is False


class TestPublishing:
    def test_blocked_subscriber_does_not_hold_the_state_lock(self, synchronizer, alpha_path, events):
        write_json(alpha_path, {'name': 'x'})
        synchronizer.initialize(watch=False)
        entered = threading.Event()
        release = threading.Event()

        def blocking(state):
            entered.set()
            release.wait(5)

        synchronizer.subscribe(blocking)
        write_json(alpha_path, {'name': 'changed externally'})
        worker = threading.Thread(target=synchronizer.handle_file_change, args=('alpha',))
        worker.start()
        try:
            assert entered.wait(5)
            assert synchronizer._lock.acquire(timeout=2)
            synchronizer._lock.release()
            # Hands its snapshot to the delivering thread instead of waiting
            assert synchronizer.patch({'alpha': {'name': 'y'}}).success
        finally:
            release.set()
            worker.join(5)

        assert not worker.is_alive()
        assert [event['alpha']['name'] for event in events] == ['x', 'changed externally', 'y']

    def test_older_snapshot_is_not_delivered_after_newer(self, synchronizer, events):
        synchronizer.initialize(watch=False)
        with synchronizer._lock:
            older = synchronizer._snapshot()
            newer = synchronizer._snapshot()

        synchronizer._publish(newer)
        synchronizer._publish(older)
        assert len(events) == 2
        assert events[-1] is newer[1]


class TestLifecycle:
    def test_cleanup_is_idempotent(self, synchronizer):
        synchronizer.initialize(watch=True)
        synchronizer.cleanup()
        synchronizer.cleanup()
        assert synchronizer._observer is None

    def test_cleanup_expires_old_backups(self, fake_home, backup_dir, settings):
        write_json(backup_dir / 'alpha-old.json', {
            'engine': 'alpha', 'originalPath': '/x', 'timestamp': '2000-01-01T00:00:00.000Z', 'data': {}})
        with ConfigSynchronizer(adapters=[AlphaAdapter()], settings=settings) as sync:
            sync.initialize(watch=False)
        assert not (backup_dir / 'alpha-old.json').exists()

    def test_update_check_disabled(self, synchronizer, monkeypatch):
        def no_network(*args, **kwargs):
            raise AssertionError('network used')

        monkeypatch.setattr(sfconfig_sync.requests, 'get', no_network)
        assert synchronizer.check_update()['hasUpdate'] is False


class TestSignals:
    def test_signals_in_snapshot_only(self, fake_home, settings, backup_dir):
        gemini_dir = fake_home / '.gemini'
        write_json(gemini_dir / 'settings.json', {'theme': 'Dark'})
        (gemini_dir / 'user_id').write_text('user-1')

        sync = ConfigSynchronizer(adapters=[GeminiAdapter()], backup_service=BackupService(backup_dir),
                                  settings=settings)
        sync.initialize(watch=False)

        assert sync.get_state()['gemini']['_userId'] == 'user-1'
        assert not any(key.startswith('_') for key in sync.state['gemini'].data)

        assert sync.patch({'gemini': {'theme': 'Light'}}).success
        assert read_json(gemini_dir / 'settings.json') == {'theme': 'Light'}
        assert sync.get_state()['gemini']['_userId'] == 'user-1'
        assert sync.list_backups('gemini')[0].data == {'theme': 'Dark'}
        sync.cleanup()
