import pytest

from conftest import make_plan
from diskmigrate import __main__ as dm


def test_transfer_command_layout():
    cmd = dm.transfer_command('/mnt/source', '/mnt/dest/', ['/var/cache/*'])

    assert cmd[:4] == ['rsync', '-aAXHv', '--progress', '--delete']
    excludes = [arg for arg in cmd if arg.startswith('--exclude=')]
    assert excludes[:len(dm.TRANSFER_EXCLUDES)] == [
        '--exclude=' + pattern for pattern in dm.TRANSFER_EXCLUDES]
    assert excludes[-1] == '--exclude=/var/cache/*'
    assert cmd[-2:] == ['/mnt/source/', '/mnt/dest/']


def test_merge_excludes_keeps_order_and_drops_repeats():
    fixed = ['/dev/*', '/proc/*']
    merged = dm.merge_excludes(
        fixed, ['/home/*/.cache', '/dev/*', '/var/tmp/*', '/home/*/.cache'])
    assert merged == ['/dev/*', '/proc/*', '/home/*/.cache', '/var/tmp/*']
    assert fixed == ['/dev/*', '/proc/*']


def test_fixed_exclusions_cover_pseudo_filesystems():
    for pattern in ('/dev/*', '/proc/*', '/sys/*', '/run/*', '/mnt/*',
                    '/swapfile'):
        assert pattern in dm.TRANSFER_EXCLUDES


def test_run_transfer_failure(monkeypatch, progress):
    monkeypatch.setattr(dm.subprocess, 'call', lambda cmd: 23)

    with pytest.raises(dm.TransferFailed) as exc:
        dm.run_transfer(['rsync'], progress)

    assert exc.value.returncode == 23
    msg, err = progress.errors[0]
    assert '--resume' in msg
    assert '--exclude' in msg
    assert err is exc.value


def test_run_transfer_success(monkeypatch, progress):
    monkeypatch.setattr(dm.subprocess, 'call', lambda cmd: 0)
    dm.run_transfer(['rsync'], progress)
    assert progress.errors == []


def test_recreate_skeleton(tmp_path):
    (tmp_path / 'proc').mkdir()
    dm.recreate_skeleton(str(tmp_path))
    for name in dm.SKELETON_DIRS:
        assert (tmp_path / name).is_dir()


def test_transfer_checks_source_before_copying(
    tmp_path, monkeypatch, commands, progress,
):
    monkeypatch.setattr(dm.os.path, 'ismount', lambda path: False)
    calls = []
    monkeypatch.setattr(dm.subprocess, 'call', lambda cmd: calls.append(cmd))

    with pytest.raises(dm.PreconditionFailed):
        dm.mount_and_transfer(
            make_plan(), progress, source_root=str(tmp_path / 'source'),
            dest_root=str(tmp_path / 'dest'), excludes=[], dry_run=False)
    assert calls == []


def test_transfer_runs_once_and_rebuilds_skeleton(
    tmp_path, monkeypatch, commands, progress,
):
    source = tmp_path / 'source'
    (source / 'etc').mkdir(parents=True)
    (source / 'etc' / 'fstab').write_text('')
    monkeypatch.setattr(dm.os.path, 'ismount', lambda path: False)
    calls = []

    def fake_call(cmd):
        calls.append(cmd)
        return 0

    monkeypatch.setattr(dm.subprocess, 'call', fake_call)

    dm.mount_and_transfer(
        make_plan(), progress, source_root=str(source),
        dest_root=str(tmp_path / 'dest'), excludes=['/var/cache/*'],
        dry_run=False)

    assert len(calls) == 1
    assert calls[0][-2:] == [str(source) + '/', str(tmp_path / 'dest') + '/']
    assert (tmp_path / 'dest' / 'proc').is_dir()
    assert len([cmd for cmd in commands if cmd[0] == 'mount']) == 6
    assert 'Extra exclude: /var/cache/*' in progress.output


def test_dry_run_transfer_does_nothing(tmp_path, commands, progress):
    dm.mount_and_transfer(
        make_plan(), progress, source_root=str(tmp_path / 'source'),
        dest_root=str(tmp_path / 'dest'), excludes=[], dry_run=True)
    assert commands == []
    assert not (tmp_path / 'dest').exists()
    assert progress.messages[-1].startswith('[DRY RUN] Would run: rsync')
