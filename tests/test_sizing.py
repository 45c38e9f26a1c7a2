import random

import pytest

from conftest import GIB, MIB, ScriptedProgress
from diskmigrate import __main__ as dm


def layout(*used, encrypted=False, swap=None):
    parts = [dm.PartitionRecord(
        device='/dev/sda1', role='efi', fstype='vfat',
        mount_point='/boot/efi', source_size=512 * MIB)]
    for idx, amount in enumerate(used):
        role = 'root' if idx == 0 else 'home'
        fstype = 'crypto_LUKS' if encrypted and role == 'home' else 'ext4'
        parts.append(dm.PartitionRecord(
            device='/dev/sda{}'.format(idx + 2), role=role, fstype=fstype,
            inner_fstype='ext4',
            mount_point='/' if idx == 0 else '/home{}'.format(idx),
            source_size=amount * 2 or GIB, used=amount))
    if swap is not None:
        parts.append(dm.PartitionRecord(
            device='/dev/sda9', role='swap', fstype='swap',
            mount_point='[SWAP]', source_size=swap))
    return parts


def test_worked_example_fits():
    parts = layout(30 * GIB, 50 * GIB)
    capacity = 100 * GIB

    available, total_used, min_needed = dm.check_feasibility(parts, capacity)
    assert available == 100 * GIB - 512 * MIB
    assert total_used == 80 * GIB
    assert available >= min_needed

    dm.propose_sizes(parts, capacity)
    efi, root, home = parts
    assert efi.dest_size == dm.EFI_SIZE
    assert root.dest_size == available * 375 // 1000
    assert home.dest_size == available * 625 // 1000
    assert 37 * GIB < root.dest_size < 38 * GIB
    assert 62 * GIB < home.dest_size < 63 * GIB
    assert dm.allocate_remainder(parts, capacity) == 0


def test_worked_example_too_tight_declined():
    plan = dm.MigrationPlan(
        source_disk='/dev/sda', dest_disk='/dev/sdb',
        partitions=layout(30 * GIB, 90 * GIB))
    progress = ScriptedProgress(confirms=[False])

    with pytest.raises(dm.Aborted) as exc:
        dm.plan_layout(plan, 100 * GIB, progress)
    assert exc.value.status == 1
    assert 'Destination may be tight' in progress.output


def test_tight_layout_accepted_keeps_floors():
    plan = dm.MigrationPlan(
        source_disk='/dev/sda', dest_disk='/dev/sdb',
        partitions=layout(30 * GIB, 90 * GIB))
    available, total_used, min_needed = dm.check_feasibility(
        plan.partitions, 100 * GIB)
    assert available < min_needed

    dm.propose_sizes(plan.partitions, 100 * GIB)
    for part in plan.data_partitions():
        assert part.dest_size >= dm.headroom_floor(part.used)


def test_plan_layout_accepting_defaults(progress):
    plan = dm.MigrationPlan(
        source_disk='/dev/sda', dest_disk='/dev/sdb',
        partitions=layout(30 * GIB, 50 * GIB))
    progress.answers = ['', '']

    dm.plan_layout(plan, 100 * GIB, progress)

    assert sum(part.dest_size for part in plan.partitions) == 100 * GIB
    assert 'Final layout' in progress.output
    assert not progress.answers


@pytest.mark.parametrize('seed', range(25))
def test_proposal_respects_floor_and_capacity(seed):
    rng = random.Random(seed)
    # Multiples of 5 keep the 1.2x floor an exact integer
    used = [rng.randint(0, 20000) * 5 * MIB
            for _ in range(rng.randint(1, 4))]
    parts = layout(*used)
    capacity = (
        dm.EFI_SIZE + dm.headroom_floor(sum(used))
        + rng.randint(0, 100000) * MIB)

    dm.propose_sizes(parts, capacity)

    data = [part for part in parts if part.is_data]
    for part in data:
        assert part.dest_size >= dm.headroom_floor(part.used)
    assert sum(part.dest_size for part in data) <= capacity - dm.EFI_SIZE


def test_headroom_floor_rounds_up():
    assert dm.headroom_floor(0) == 0
    assert dm.headroom_floor(10) == 12
    assert dm.headroom_floor(11) == 14
    assert dm.headroom_floor(1) == 2


def test_encrypted_partition_gets_overhead():
    parts = layout(10 * GIB, 10 * GIB, encrypted=True)
    capacity = 100 * GIB
    dm.propose_sizes(parts, capacity)
    available = capacity - dm.EFI_SIZE
    assert parts[1].dest_size == available * 500 // 1000
    assert parts[2].dest_size == available * 500 // 1000 + dm.LUKS_OVERHEAD


def test_swap_keeps_source_size_and_skips_remainder():
    parts = layout(10 * GIB, 10 * GIB, swap=8 * GIB)
    capacity = 200 * GIB
    dm.propose_sizes(parts, capacity)
    assert parts[3].dest_size == 8 * GIB

    parts[1].dest_size = parts[2].dest_size = 50 * GIB
    remaining = dm.allocate_remainder(parts, capacity)

    assert remaining == capacity - dm.EFI_SIZE - 108 * GIB
    assert parts[2].dest_size == 50 * GIB + remaining
    assert parts[3].dest_size == 8 * GIB
    assert sum(part.dest_size for part in parts) == capacity


def test_remainder_is_idempotent():
    parts = layout(10 * GIB, 20 * GIB)
    capacity = 64 * GIB
    dm.propose_sizes(parts, capacity)
    for part in parts:
        part.dest_size -= part.dest_size // 10
    dm.allocate_remainder(parts, capacity)
    sizes = [part.dest_size for part in parts]

    assert dm.allocate_remainder(parts, capacity) == 0
    assert [part.dest_size for part in parts] == sizes


def test_remainder_overcommitted_changes_nothing():
    parts = layout(10 * GIB, 20 * GIB)
    for part in parts:
        part.dest_size = 40 * GIB
    assert dm.allocate_remainder(parts, 64 * GIB) == 64 * GIB - 120 * GIB
    assert all(part.dest_size == 40 * GIB for part in parts)


def test_nothing_used_splits_evenly():
    parts = layout(0, 0)
    dm.propose_sizes(parts, 10 * GIB + dm.EFI_SIZE)
    assert parts[1].dest_size == parts[2].dest_size == 5 * GIB


def test_override_below_floor_needs_confirmation():
    plan = dm.MigrationPlan(
        source_disk='/dev/sda', dest_disk='/dev/sdb',
        partitions=layout(30 * GIB, 50 * GIB))
    progress = ScriptedProgress(answers=['1G', ''], confirms=[False])

    with pytest.raises(dm.Aborted):
        dm.plan_layout(plan, 100 * GIB, progress)
    assert plan.partitions[1].dest_size == GIB
    assert 'smaller than its usage' in progress.output


def test_override_below_floor_confirmed():
    plan = dm.MigrationPlan(
        source_disk='/dev/sda', dest_disk='/dev/sdb',
        partitions=layout(30 * GIB, 50 * GIB))
    progress = ScriptedProgress(answers=['nonsense', '1G', ''],
                                confirms=[True])

    dm.plan_layout(plan, 100 * GIB, progress)

    root, home = plan.partitions[1:]
    assert root.dest_size == GIB
    assert sum(part.dest_size for part in plan.partitions) == 100 * GIB
    assert 'Allocating remaining' in progress.output
    assert 'Size must be' in progress.output


def test_layout_fit_check():
    parts = layout(10 * GIB, 10 * GIB)
    parts[0].dest_size = dm.EFI_SIZE
    parts[1].dest_size = 60 * GIB
    parts[2].dest_size = GIB
    assert dm.check_layout_fits(parts, 64 * GIB)
    parts[1].dest_size = 64 * GIB
    assert not dm.check_layout_fits(parts, 64 * GIB)


@pytest.mark.parametrize('text, expected', [
    ('4096', 4096),
    ('512M', 512 * MIB),
    ('20G', 20 * GIB),
    ('20g', 20 * GIB),
    ('2GiB', 2 * GIB),
    (' 3G ', 3 * GIB),
    ('1.5T', 3 * 1024 ** 4 // 2),
    ('0.5k', 512),
])
def test_parse_size(text, expected):
    assert dm.parse_size(text) == expected


@pytest.mark.parametrize('text', ['', 'abc', '-1G', '1.2.3G', '10X'])
def test_parse_size_rejects(text):
    with pytest.raises(ValueError):
        dm.parse_size(text)


@pytest.mark.parametrize('size, expected', [
    (512, '512'),
    (512 * MIB, '512M'),
    (1536 * MIB, '1.5G'),
    (100 * GIB, '100G'),
])
def test_human_size(size, expected):
    assert dm.human_size(size) == expected
