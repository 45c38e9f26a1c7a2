import fnmatch
import subprocess
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from diskmigrate import __main__ as dm  # noqa: E402

GIB = 1024 ** 3
MIB = 1024 ** 2


class ScriptedProgress(dm.ProgressListener):
    """Progress listener fed with canned answers.

    An empty answer accepts the prompt's default, like pressing enter.
    """

    def __init__(self, answers=(), confirms=()):
        self.answers = list(answers)
        self.confirms = list(confirms)
        self.messages = []
        self.commands = []
        self.errors = []

    def notify(self, msg):
        self.messages.append(msg)

    def notify_command(self, cmd):
        self.commands.append(list(cmd))

    def notify_error(self, msg, err):
        self.errors.append((msg, err))

    def ask(self, prompt, default=''):
        answer = self.answers.pop(0)
        return answer or default

    def confirm(self, prompt):
        return self.confirms.pop(0)

    @property
    def output(self):
        return '\n'.join(self.messages)


class FakeAugeas:
    """Dict-backed stand-in for an augeas tree."""

    def __init__(self, tree=None):
        self.tree = dict(tree or {})
        self.saved = False

    def get(self, path):
        return self.tree.get(path)

    def set(self, path, value):
        self.tree[path] = value

    def match(self, pattern):
        return [path for path in self.tree
                if fnmatch.fnmatchcase(path, pattern)]

    def remove(self, pattern):
        doomed = self.match(pattern)
        for path in list(self.tree):
            if any(path == top or path.startswith(top + '/')
                   for top in doomed):
                del self.tree[path]

    def save(self):
        self.saved = True


@pytest.fixture
def progress():
    return ScriptedProgress()


@pytest.fixture
def commands(monkeypatch):
    """Record external commands instead of running them."""
    issued = []

    def fake_quiet_call(cmd, *args, **kwargs):
        issued.append(list(cmd))

    def fake_interactive_call(cmd, progress):
        progress.notify_command(cmd)
        issued.append(list(cmd))

    monkeypatch.setattr(dm, 'quiet_call', fake_quiet_call)
    monkeypatch.setattr(dm, 'interactive_call', fake_interactive_call)
    return issued


@pytest.fixture
def failing_commands(monkeypatch):
    """Like commands, but every external command fails."""
    issued = []

    def fake_quiet_call(cmd, *args, **kwargs):
        issued.append(list(cmd))
        raise subprocess.CalledProcessError(32, cmd)

    monkeypatch.setattr(dm, 'quiet_call', fake_quiet_call)
    return issued


def make_plan(encrypted_home=True, swap=False):
    partitions = [
        dm.PartitionRecord(
            device='/dev/sda1', role='efi', fstype='vfat',
            mount_point='/boot/efi', source_size=512 * MIB,
            dest_device='/dev/sdb1'),
        dm.PartitionRecord(
            device='/dev/sda2', role='root', fstype='ext4', mount_point='/',
            source_size=40 * GIB, dest_device='/dev/sdb2'),
    ]
    if encrypted_home:
        partitions.append(dm.PartitionRecord(
            device='/dev/sda3', role='home', fstype='crypto_LUKS',
            inner_fstype='ext4', mount_point='/home',
            mapper_name='source_home', source_size=60 * GIB,
            dest_device='/dev/sdb3'))
    else:
        partitions.append(dm.PartitionRecord(
            device='/dev/sda3', role='home', fstype='ext4',
            mount_point='/home', source_size=60 * GIB,
            dest_device='/dev/sdb3'))
    if swap:
        partitions.append(dm.PartitionRecord(
            device='/dev/sda4', role='swap', fstype='swap',
            mount_point='[SWAP]', source_size=8 * GIB,
            dest_device='/dev/sdb4'))
    return dm.MigrationPlan(
        source_disk='/dev/sda', dest_disk='/dev/sdb', partitions=partitions)
