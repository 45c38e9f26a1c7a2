# Python 3

import argparse
import contextlib
import decimal
import json
import os
import re
import shlex
import shutil
import signal
import stat
import subprocess
import sys
import time


EFI_SIZE = 512 * 1024 ** 2
# LUKS2 header and keyslot area
LUKS_OVERHEAD = 16 * 1024 ** 2
# 1.2x headroom, in permille so sizing stays in integers
HEADROOM_PERMILLE = 1200
MIB = 1024 ** 2

STATE_FILE = '/tmp/diskmigrate-state.json'
SOURCE_ROOT = '/mnt/source'
DEST_ROOT = '/mnt/dest'

SOURCE_MAPPER = 'source_home'
DEST_MAPPER = 'dest_home'
CRYPTTAB_NAME = 'home'

ROLES = ('efi', 'root', 'home', 'swap', 'other')
SINGLE_ROLES = ('efi', 'root')
SWAP_MOUNT = '[SWAP]'
DEFAULT_EFI_MOUNT = '/boot/efi'

FAT_SIGNATURES = frozenset(['vfat', 'msdos'])
SWAP_SIGNATURE = 'swap'
LUKS_SIGNATURE = 'crypto_LUKS'

# mkfs refuses to overwrite an existing signature without these
MKFS_FORCE = {
    'ext2': '-F', 'ext3': '-F', 'ext4': '-F', 'xfs': '-f', 'btrfs': '-f'}

TRANSFER_ARGS = ['-aAXHv', '--progress', '--delete']
TRANSFER_EXCLUDES = (
    '/dev/*',
    '/proc/*',
    '/sys/*',
    '/tmp/*',
    '/run/*',
    '/mnt/*',
    '/media/*',
    '/lost+found',
    '/swapfile',
)
SKELETON_DIRS = ('dev', 'proc', 'sys', 'tmp', 'run', 'mnt', 'media')

# (what, where under the destination root, mount arguments)
CHROOT_MOUNTS = (
    ('/dev', 'dev', ['--bind']),
    ('/dev/pts', 'dev/pts', ['--bind']),
    ('proc', 'proc', ['-t', 'proc']),
    ('sysfs', 'sys', ['-t', 'sysfs']),
)
# Only present when booted in EFI mode
EFIVARS_MOUNT = ('efivarfs', 'sys/firmware/efi/efivars', ['-t', 'efivarfs'])

# command -> Arch package providing it
DEPENDENCIES = {
    'blkid': 'util-linux',
    'blockdev': 'util-linux',
    'cryptsetup': 'cryptsetup',
    'lsblk': 'util-linux',
    'mkfs.fat': 'dosfstools',
    'mkswap': 'util-linux',
    'partprobe': 'parted',
    'rsync': 'rsync',
    'wipefs': 'util-linux',
}

PERSISTED_FIELDS = (
    'device', 'role', 'fstype', 'inner_fstype', 'mount_point',
    'mapper_name', 'dest_device')


def intdiv_up(num, denom):
    return (num - 1) // denom + 1


def align_up(size, align):
    return intdiv_up(size, align) * align


def align(size, align):
    return (size // align) * align


class PreconditionFailed(Exception):
    pass


class Aborted(Exception):
    def __init__(self, status=1):
        super(Aborted, self).__init__(status)
        self.status = status


class TransferFailed(Exception):
    def __init__(self, returncode):
        super(TransferFailed, self).__init__(returncode)
        self.returncode = returncode


# SQLa, compatible license
class memoized_property(object):
    """A read-only @property that is only evaluated once."""
    def __init__(self, fget, doc=None):
        self.fget = fget
        self.__doc__ = doc or fget.__doc__
        self.__name__ = fget.__name__

    def __get__(self, obj, cls):
        if obj is None:
            return self
        obj.__dict__[self.__name__] = result = self.fget(obj)
        return result


def quiet_call(cmd, *args, **kwargs):
    # universal_newlines is used to enable io decoding in the current locale
    proc = subprocess.Popen(
        cmd, *args, universal_newlines=True, stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE, stderr=subprocess.PIPE, **kwargs)
    odat, edat = proc.communicate()
    if proc.returncode != 0:
        print(
            'Command {!r} has failed with status {}\n'
            'Standard output:\n{}\n'
            'Standard error:\n{}'.format(
                cmd, proc.returncode, odat, edat), file=sys.stderr)
        raise subprocess.CalledProcessError(proc.returncode, cmd, odat)


def call(cmd, progress):
    progress.notify_command(cmd)
    quiet_call(cmd)


def interactive_call(cmd, progress):
    # Keeps the terminal, for passphrase prompts and long-running output
    progress.notify_command(cmd)
    subprocess.check_call(cmd)


SIZE_RE = re.compile(r'^(\d+(?:\.\d+)?)([bkmgtpe])?(?:i?b)?\Z')


def parse_size(size):
    match = SIZE_RE.match(size.strip().lower())
    if not match:
        raise ValueError(
            'Size must be a decimal number '
            'and an optional one-character unit suffix (bkmgtpe)')
    unit = match.group(2)
    if unit is None:
        unit = 'b'
    # powers of 1024, like numfmt --from=iec
    return int(decimal.Decimal(match.group(1)) * 1024**'bkmgtpe'.find(unit))


def human_size(size):
    if size < 1024:
        return '{}'.format(size)
    value = float(size)
    for unit in 'KMGTPE':
        value /= 1024
        if value < 1024:
            break
    if value < 10:
        return '{:.1f}{}'.format(value, unit)
    return '{:.0f}{}'.format(value, unit)


def disk_path(name):
    # Accept both sda and /dev/sda
    if not name.startswith('/'):
        name = '/dev/' + name
    return name


def is_block_device(devpath):
    try:
        st = os.stat(devpath)
    except FileNotFoundError:
        return False
    return stat.S_ISBLK(st.st_mode)


def partition_path(disk, number):
    # The kernel inserts a p when the disk name ends with a digit
    # (nvme0n1p2, mmcblk0p1, loop0p1)
    if disk[-1].isdigit():
        return '{}p{}'.format(disk, number)
    return '{}{}'.format(disk, number)


def mapper_path(name):
    return '/dev/mapper/' + name


def mapper_active(name):
    return is_block_device(mapper_path(name))


def mapper_name(base, index):
    # source_home, source_home1, ... for successive encrypted partitions
    if index == 0:
        return base
    return '{}{}'.format(base, index)


def devpath_from_sysdir(sd):
    with open(sd + '/dev') as fi:
        return os.path.realpath('/dev/block/' + fi.read().rstrip())


def unescape_mountinfo(field):
    return re.sub(
        r'\\([0-7]{3})', lambda match: chr(int(match.group(1), 8)), field)


class BlockDevice:
    def __init__(self, devpath):
        self.devpath = devpath

    @memoized_property
    def superblock_type(self):
        try:
            return subprocess.check_output(
                'blkid -p -o value -s TYPE --'.split() + [self.devpath]
            ).rstrip().decode('ascii')
        except subprocess.CalledProcessError as err:
            # No recognised superblock
            assert err.returncode == 2, err

    @memoized_property
    def size(self):
        rv = int(subprocess.check_output(
            'blockdev --getsize64'.split() + [self.devpath]))
        assert rv % 512 == 0
        return rv

    @memoized_property
    def fsuuid(self):
        return subprocess.check_output(
            'blkid -p -o value -s UUID --'.split() + [self.devpath]
        ).rstrip().decode('ascii')

    @property
    def sysfspath(self):
        # pyudev would also work
        st = os.stat(self.devpath)
        assert stat.S_ISBLK(st.st_mode)
        return '/sys/dev/block/%d:%d' % self.devnum

    @property
    def devnum(self):
        st = os.stat(self.devpath)
        assert stat.S_ISBLK(st.st_mode)
        return (os.major(st.st_rdev), os.minor(st.st_rdev))

    @memoized_property
    def is_partition(self):
        return os.path.exists(self.sysfspath + '/partition')

    def iter_holders(self):
        for hld in os.listdir(self.sysfspath + '/holders'):
            yield BlockDevice('/dev/' + hld)

    def iter_partitions(self):
        # Sorted by start sector, the order the destination
        # table will number them in
        found = []
        for name in os.listdir(self.sysfspath):
            sd = os.path.join(self.sysfspath, name)
            if not os.path.exists(sd + '/partition'):
                continue
            with open(sd + '/start') as fi:
                start = int(fi.read())
            found.append((start, devpath_from_sysdir(sd)))
        for start, devpath in sorted(found):
            yield BlockDevice(devpath)

    def dm_attr(self, name):
        path = self.sysfspath + '/dm/' + name
        if not os.path.exists(path):
            return ''
        with open(path) as fi:
            return fi.read().rstrip()

    @property
    def dm_name(self):
        return self.dm_attr('name')

    @property
    def dm_uuid(self):
        return self.dm_attr('uuid')

    def current_mount_point(self):
        dn = '%d:%d' % self.devnum
        with open('/proc/self/mountinfo') as mounts:
            for line in mounts:
                items = line.split()
                if items[2] == dn:
                    return unescape_mountinfo(items[4])


class PartitionedDevice(BlockDevice):
    @memoized_property
    def parted_device(self):
        import parted.device
        return parted.device.Device(self.devpath)


class LUKS:
    """
    pycryptsetup isn't used because it isn't in PyPI,
    cryptsetup itself is everywhere the migration runs.
    """

    def __init__(self, device):
        self.device = device

    def activate(self, dmname, progress):
        # Prompts for the passphrase
        interactive_call(
            ['cryptsetup', 'luksOpen', '--', self.device.devpath, dmname],
            progress)

    def format(self, progress):
        interactive_call(
            ['cryptsetup', 'luksFormat', '--', self.device.devpath],
            progress)

    def snoop_activated(self):
        # A dm-crypt holder means it was unlocked before we got here
        for hld in self.device.iter_holders():
            if hld.dm_uuid.startswith('CRYPT-'):
                return hld


class PartitionRecord:
    def __init__(
        self, device, role, fstype='', inner_fstype='', mount_point='',
        mapper_name='', source_size=0, used=0, dest_size=0, dest_device='',
    ):
        self.device = device
        self.role = role
        self.fstype = fstype
        self.inner_fstype = inner_fstype
        self.mount_point = mount_point
        self.mapper_name = mapper_name
        self.source_size = source_size
        self.used = used
        self.dest_size = dest_size
        self.dest_device = dest_device
        # Runtime only, never persisted: cleanup closes what we opened
        self.opened_by_this_run = False
        self.dest_opened_by_this_run = False

    def __repr__(self):
        return '<PartitionRecord {} {} {}>'.format(
            self.device, self.role, self.mount_point)

    @property
    def is_encrypted(self):
        # Swap is recreated as plain swap; efi can't be LUKS
        return self.fstype == LUKS_SIGNATURE and self.is_data

    @property
    def is_data(self):
        return self.role not in ('efi', 'swap')

    @property
    def source_mount_device(self):
        if self.is_encrypted:
            assert self.mapper_name, self
            return mapper_path(self.mapper_name)
        return self.device

    @property
    def dest_fstype(self):
        if self.role == 'efi':
            return 'vfat'
        if self.role == 'swap':
            return 'swap'
        if self.is_encrypted:
            return self.inner_fstype
        return self.fstype


class MigrationPlan:
    def __init__(self, source_disk=None, dest_disk=None, partitions=None):
        self.source_disk = source_disk
        self.dest_disk = dest_disk
        if partitions is None:
            partitions = []
        self.partitions = partitions

    @property
    def has_encrypted_home(self):
        return any(part.is_encrypted for part in self.partitions)

    def has_role(self, role):
        return any(part.role == role for part in self.partitions)

    def find_role(self, role):
        for part in self.partitions:
            if part.role == role:
                return part

    @property
    def root(self):
        return self.find_role('root')

    def data_partitions(self):
        return [part for part in self.partitions if part.is_data]

    def encrypted_partitions(self):
        return [part for part in self.partitions if part.is_encrypted]

    def dest_mapper_name(self, part):
        return mapper_name(
            DEST_MAPPER, self.encrypted_partitions().index(part))

    def dest_mount_device(self, part):
        if part.is_encrypted:
            return mapper_path(self.dest_mapper_name(part))
        assert part.dest_device, part
        return part.dest_device


class ProgressListener:
    pass


class CLIProgressHandler(ProgressListener):
    """A progress listener that prints messages and exits on error.

    It also owns the operator prompts, so the engine can be driven
    by a scripted listener.
    """

    def __init__(self, debug=False):
        self.debug = debug

    def notify(self, msg):
        print(msg)

    def notify_command(self, cmd):
        if self.debug:
            print('+ ' + ' '.join(shlex.quote(arg) for arg in cmd))

    def notify_error(self, msg, err):
        """Takes an exception so ProgressListener callers remember to raise it.

        Even though this implementation won't return, others would.
        """

        print(msg, file=sys.stderr)
        sys.exit(2)

    def ask(self, prompt, default=''):
        if default:
            prompt = '{} [{}]: '.format(prompt, default)
        else:
            prompt = '{}: '.format(prompt)
        return input(prompt).strip() or default

    def confirm(self, prompt):
        return input('{} [y/N] '.format(prompt)).strip().lower() == 'y'


def fail(progress, msg):
    err = PreconditionFailed(msg)
    progress.notify_error(msg, err)
    raise err


# Discovery and classification

def suggest_role(fstype, has_root):
    if fstype in FAT_SIGNATURES:
        return 'efi'
    if fstype == SWAP_SIGNATURE:
        return 'swap'
    if fstype == LUKS_SIGNATURE:
        # Encrypted volumes hold user data, never the root
        return 'home'
    if not has_root:
        return 'root'
    return 'home'


def default_mount_point(role, detected):
    if role == 'root':
        return '/'
    if role == 'swap':
        return SWAP_MOUNT
    if role == 'home':
        return '/home'
    if role == 'efi':
        return detected or DEFAULT_EFI_MOUNT
    return detected or ''


def confirm_role(plan, suggested, progress, fstype=''):
    while True:
        role = progress.ask(
            '    Role? [{}]'.format('/'.join(ROLES)), suggested).lower()
        if role not in ROLES:
            progress.notify('    Unknown role {!r}'.format(role))
        elif role in SINGLE_ROLES and plan.has_role(role):
            progress.notify(
                '    There is already a {} partition'.format(role))
        elif role == 'efi' and fstype == LUKS_SIGNATURE:
            progress.notify(
                '    An encrypted partition cannot be the EFI partition')
        else:
            if role == 'swap' and fstype == LUKS_SIGNATURE:
                progress.notify(
                    '    Encrypted swap will be recreated as plain swap')
            return role


def confirm_mount_point(plan, role, detected, progress):
    default = default_mount_point(role, detected)
    if role in ('root', 'swap'):
        return default
    taken = {part.mount_point for part in plan.partitions}
    while True:
        mount_point = progress.ask('    Mount point?', default)
        if mount_point != '/':
            mount_point = mount_point.rstrip('/')
        if not mount_point.startswith('/') or mount_point == '/':
            progress.notify(
                '    The mount point must be an absolute path below /')
        elif mount_point in taken:
            progress.notify(
                '    {} is already used by another partition'
                .format(mount_point))
        else:
            return mount_point


def unlock_source(plan, part, device, progress):
    holder = LUKS(device).snoop_activated()
    if holder is not None:
        part.mapper_name = holder.dm_name
        progress.notify(
            '    LUKS already unlocked as {}'.format(
                mapper_path(part.mapper_name)))
    else:
        part.mapper_name = mapper_name(
            SOURCE_MAPPER, plan.encrypted_partitions().index(part))
        progress.notify('    Unlocking LUKS partition...')
        LUKS(device).activate(part.mapper_name, progress)
        part.opened_by_this_run = True
    part.inner_fstype = (
        BlockDevice(part.source_mount_device).superblock_type or '')
    progress.notify('    Inner filesystem: {}'.format(part.inner_fstype))


def discover_partitions(plan, progress):
    progress.notify('==> Identifying partitions on {}'.format(
        plan.source_disk))
    devices = list(BlockDevice(plan.source_disk).iter_partitions())
    if not devices:
        fail(progress, 'No partitions found on {}'.format(plan.source_disk))

    for device in devices:
        fstype = device.superblock_type or ''
        progress.notify(
            '  Partition: {}\n  Filesystem: {}\n  Size: {}'.format(
                device.devpath, fstype or 'unknown',
                human_size(device.size)))
        role = confirm_role(
            plan, suggest_role(fstype, plan.has_role('root')), progress,
            fstype)
        part = PartitionRecord(
            device=device.devpath, role=role, fstype=fstype,
            source_size=device.size)
        part.mount_point = confirm_mount_point(
            plan, role, device.current_mount_point(), progress)
        # In the plan before unlocking, so cleanup sees what we open
        plan.partitions.append(part)
        if part.is_encrypted:
            unlock_source(plan, part, device, progress)

    if not plan.has_role('root'):
        fail(progress, 'No root partition was selected')


# Usage measurement

def used_bytes(path):
    # Same figure as the Used column of df
    st = os.statvfs(path)
    return (st.f_blocks - st.f_bfree) * st.f_frsize


def measure_usage(plan, progress, *, source_root):
    progress.notify('==> Mounting source partitions and measuring usage...')
    for part, target in mount_tree(plan, progress, root=source_root):
        part.used = min(used_bytes(target), part.source_size)
        progress.notify('    {} ({}): {} used'.format(
            part.mount_point, part.device, human_size(part.used)))
    for part in plan.partitions:
        if part.role == 'swap':
            part.used = 0


# Destination sizing

def headroom_floor(used):
    # Rounded up, never below the 1.2x floor
    return intdiv_up(used * HEADROOM_PERMILLE, 1000)


def check_feasibility(partitions, capacity):
    available = capacity - EFI_SIZE
    total_used = sum(part.used for part in partitions if part.is_data)
    return available, total_used, headroom_floor(total_used)


def propose_sizes(partitions, capacity):
    available = capacity - EFI_SIZE
    data = [part for part in partitions if part.is_data]
    total_used = sum(part.used for part in data)

    for part in partitions:
        if part.role == 'efi':
            part.dest_size = EFI_SIZE
            continue
        if part.role == 'swap':
            part.dest_size = part.source_size
            continue
        if total_used > 0:
            permille = part.used * 1000 // total_used
            proposed = available * permille // 1000
        else:
            # Nothing measured, split evenly
            proposed = available // len(data)
        proposed = max(proposed, headroom_floor(part.used))
        if part.is_encrypted:
            proposed += LUKS_OVERHEAD
        part.dest_size = proposed


def allocate_remainder(partitions, capacity):
    """Give unallocated space to the last data partition.

    Returns the remaining byte count; negative means overcommitted.
    """

    remaining = capacity - sum(part.dest_size for part in partitions)
    data = [part for part in partitions if part.is_data]
    if remaining > 0 and data:
        data[-1].dest_size += remaining
    return remaining


def below_floor(partitions):
    rv = []
    for part in partitions:
        if not part.is_data:
            continue
        floor = headroom_floor(part.used)
        if part.is_encrypted:
            floor += LUKS_OVERHEAD
        if part.dest_size < floor:
            rv.append(part)
    return rv


def check_layout_fits(partitions, capacity):
    # The last partition fills whatever is left, the others are exact.
    # Keep a MiB for alignment and another for the GPT headers.
    fixed = sum(align_up(part.dest_size, MIB) for part in partitions[:-1])
    return fixed + 3 * MIB <= capacity


def format_layout(plan):
    lines = ['  {:<4}  {:<6}  {:<12}  {:>11}  {:>11}  {:>11}  {}'.format(
        '#', 'Role', 'Mount', 'Source', 'Used', 'Dest', 'Notes')]
    lines.append('  ' + '-' * 75)
    for num, part in enumerate(plan.partitions, 1):
        if part.role == 'efi':
            notes = 'fixed'
        elif part.role == 'swap':
            notes = 'same as source'
        elif part.is_encrypted:
            notes = 'LUKS encrypted'
        else:
            notes = ''
        lines.append('  {:<4}  {:<6}  {:<12}  {:>11}  {:>11}  {:>11}  {}'.format(
            num, part.role, part.mount_point, human_size(part.source_size),
            human_size(part.used), human_size(part.dest_size), notes))
    return '\n'.join(lines)


def ask_size(part, progress):
    while True:
        answer = progress.ask(
            '  Size for {} ({})?'.format(part.role, part.mount_point),
            human_size(part.dest_size))
        if answer == human_size(part.dest_size):
            return part.dest_size
        try:
            size = parse_size(answer)
        except ValueError as err:
            progress.notify('  {}'.format(err))
            continue
        if size < MIB:
            progress.notify('  Partitions must be at least 1M')
            continue
        return size


def plan_layout(plan, capacity, progress):
    available, total_used, min_needed = check_feasibility(
        plan.partitions, capacity)
    if available < min_needed:
        progress.notify(
            'WARNING: Destination may be tight.\n'
            '  Total data: {}\n'
            '  Available:  {} (after EFI)\n'
            '  Suggested:  {} (data + 20% headroom)'.format(
                human_size(total_used), human_size(available),
                human_size(min_needed)))
        if not progress.confirm('Continue anyway?'):
            raise Aborted(1)

    propose_sizes(plan.partitions, capacity)
    progress.notify('Proposed partition layout for {}:\n{}'.format(
        plan.dest_disk, format_layout(plan)))
    progress.notify(
        'You can adjust sizes. The last data partition '
        'will get any remaining space.')
    for part in plan.partitions:
        if part.role == 'efi':
            continue
        part.dest_size = ask_size(part, progress)

    tight = below_floor(plan.partitions)
    if tight:
        for part in tight:
            progress.notify(
                'WARNING: {} ({}) is smaller than its usage plus 20%'.format(
                    part.mount_point, human_size(part.dest_size)))
        if not progress.confirm('Keep these sizes anyway?'):
            raise Aborted(1)

    remaining = allocate_remainder(plan.partitions, capacity)
    if remaining > 0:
        last = plan.data_partitions()[-1]
        progress.notify(
            '  Allocating remaining {} to {} ({}), final size {}'.format(
                human_size(remaining), last.role, last.mount_point,
                human_size(last.dest_size)))
    elif remaining < 0:
        progress.notify(
            '  The layout exceeds the disk by {}, '
            'the last partition will be shrunk to fit'.format(
                human_size(-remaining)))
    if not check_layout_fits(plan.partitions, capacity):
        fail(progress, 'The layout does not fit on {}, reduce some sizes'
             .format(plan.dest_disk))
    progress.notify('Final layout:\n' + format_layout(plan))


# Destination partitioning and formatting

def write_partition_table(plan, progress):
    import parted

    device = PartitionedDevice(plan.dest_disk)
    pdev = device.parted_device
    sectors_per_mib = MIB // pdev.sectorSize
    disk = parted.freshDisk(pdev, 'gpt')

    start = sectors_per_mib
    last = len(plan.partitions)
    for num, part in enumerate(plan.partitions, 1):
        if num == last:
            # Parted uses inclusive ends; the free region stops
            # right before the backup GPT
            end = disk.getFreeSpaceRegions()[-1].end
        else:
            length = align(part.dest_size // pdev.sectorSize, sectors_per_mib)
            assert length > 0, part
            end = start + length - 1
        geom = parted.geometry.Geometry(device=pdev, start=start, end=end)
        ppart = parted.partition.Partition(
            disk=disk, type=parted.PARTITION_NORMAL, geometry=geom)
        cons = parted.constraint.Constraint(exactGeom=geom)
        assert disk.addPartition(partition=ppart, constraint=cons) is True
        ppart.getPedPartition().set_name(part.role)
        if part.role == 'efi':
            # On GPT the boot flag is the ESP type
            ppart.setFlag(parted.PARTITION_BOOT)
        elif part.role == 'swap':
            ppart.setFlag(parted.PARTITION_SWAP)
        progress.notify('    {}: {} {}'.format(
            num, part.role, human_size(geom.length * pdev.sectorSize)))
        start = align_up(end + 1, sectors_per_mib)

    # commitToDevice (atomic) + commitToOS (not atomic, less important)
    disk.commit()


def wait_for_device(devpath, progress, timeout=10):
    deadline = time.monotonic() + timeout
    while not is_block_device(devpath):
        if time.monotonic() >= deadline:
            fail(progress, '{} did not appear after partitioning'
                 .format(devpath))
        time.sleep(.5)


def format_partitions(plan, progress):
    for num, part in enumerate(plan.partitions, 1):
        part.dest_device = partition_path(plan.dest_disk, num)
        wait_for_device(part.dest_device, progress)

        if part.role == 'efi':
            progress.notify('    {} -> FAT32 (EFI)'.format(part.dest_device))
            call(['mkfs.fat', '-F32', part.dest_device], progress)
        elif part.role == 'swap':
            progress.notify('    {} -> swap'.format(part.dest_device))
            call(['mkswap', '--', part.dest_device], progress)
        elif part.is_encrypted:
            name = plan.dest_mapper_name(part)
            progress.notify('    {} -> LUKS + {}'.format(
                part.dest_device, part.inner_fstype))
            progress.notify(
                '    Set the LUKS passphrase for the destination '
                '{} partition:'.format(part.role))
            luks = LUKS(BlockDevice(part.dest_device))
            luks.format(progress)
            luks.activate(name, progress)
            part.dest_opened_by_this_run = True
            mkfs(part.inner_fstype, mapper_path(name), progress)
        else:
            progress.notify('    {} -> {}'.format(
                part.dest_device, part.fstype))
            mkfs(part.fstype, part.dest_device, progress)


def mkfs(fstype, devpath, progress):
    if not fstype:
        fail(progress, 'No filesystem type known for {}'.format(devpath))
    cmd = ['mkfs.' + fstype]
    if fstype in MKFS_FORCE:
        cmd.append(MKFS_FORCE[fstype])
    call(cmd + [devpath], progress)


def partition_destination(plan, progress, *, state_file, dry_run):
    if dry_run:
        progress.notify(
            '[DRY RUN] Would erase {} and create a GPT with:'.format(
                plan.dest_disk))
        for num, part in enumerate(plan.partitions, 1):
            part.dest_device = partition_path(plan.dest_disk, num)
            progress.notify('[DRY RUN]   {} {} {} -> {}{}'.format(
                part.dest_device, part.role, human_size(part.dest_size),
                part.dest_fstype, ' (LUKS)' if part.is_encrypted else ''))
        progress.notify('[DRY RUN] Would save state to {}'.format(state_file))
        return

    progress.notify('==> Partitioning {}...'.format(plan.dest_disk))
    call(['wipefs', '--all', '--', plan.dest_disk], progress)
    write_partition_table(plan, progress)
    call(['partprobe', plan.dest_disk], progress)

    progress.notify('==> Formatting partitions...')
    format_partitions(plan, progress)

    # Point of no return: everything after this can be retried
    save_plan(plan, state_file)
    progress.notify('    State saved to {}'.format(state_file))


# State persistence

def plan_record(plan):
    record = {
        'source_disk': plan.source_disk,
        'dest_disk': plan.dest_disk,
        'luks_home': plan.has_encrypted_home,
        'partition_count': len(plan.partitions),
    }
    for idx, part in enumerate(plan.partitions):
        for field in PERSISTED_FIELDS:
            record['{}.{}'.format(field, idx)] = getattr(part, field)
    return record


def save_plan(plan, path):
    dirname = os.path.dirname(path)
    if dirname:
        os.makedirs(dirname, exist_ok=True)
    tmp = path + '.tmp'
    with open(tmp, 'w') as fo:
        json.dump(plan_record(plan), fo, indent=2, sort_keys=True)
        fo.write('\n')
        fo.flush()
        os.fsync(fo.fileno())
    os.replace(tmp, path)


def load_plan(path):
    if not os.path.exists(path):
        raise PreconditionFailed(
            'No state file found at {}. Run without --resume first.'
            .format(path))
    try:
        with open(path) as fi:
            record = json.load(fi)
        plan = MigrationPlan(
            source_disk=record['source_disk'], dest_disk=record['dest_disk'])
        for idx in range(record['partition_count']):
            fields = {
                field: record['{}.{}'.format(field, idx)]
                for field in PERSISTED_FIELDS}
            plan.partitions.append(PartitionRecord(**fields))
    except (ValueError, KeyError, TypeError) as err:
        raise PreconditionFailed(
            'State file {} is unreadable or incomplete: {!r}'
            .format(path, err)) from err
    for part in plan.partitions:
        if part.role not in ROLES:
            raise PreconditionFailed(
                'State file {} has an unknown role {!r}'
                .format(path, part.role))
    if plan.root is None:
        raise PreconditionFailed(
            'State file {} has no root partition'.format(path))
    return plan


def open_mapper(devpath, name, progress):
    """Unlock devpath as name unless it already is.

    Returns True when this call opened it.
    """

    if mapper_active(name):
        progress.notify('    {} already open as {}'.format(
            devpath, mapper_path(name)))
        return False
    progress.notify('    Unlocking {}...'.format(devpath))
    LUKS(BlockDevice(devpath)).activate(name, progress)
    return True


def resume_plan(plan, progress):
    progress.notify(
        '    Source: {}\n    Dest:   {}\n    Partitions: {}'.format(
            plan.source_disk, plan.dest_disk, len(plan.partitions)))
    for part in plan.encrypted_partitions():
        part.opened_by_this_run = open_mapper(
            part.device, part.mapper_name, progress)
    for part in plan.encrypted_partitions():
        part.dest_opened_by_this_run = open_mapper(
            part.dest_device, plan.dest_mapper_name(part), progress)


# Mounting and transfer

def mount_depth(mount_point):
    return len([comp for comp in mount_point.split('/') if comp])


def mount_order(partitions):
    # Root first, then parents before their children
    return sorted(
        (part for part in partitions if part.role != 'swap'),
        key=lambda part: (part.role != 'root', mount_depth(part.mount_point)))


def mount_target(root, mount_point):
    if mount_point == '/':
        return root
    return root + mount_point


def mount_once(device, target, progress, options=None):
    os.makedirs(target, exist_ok=True)
    if os.path.ismount(target):
        progress.notify('    {} already mounted'.format(target))
        return False
    cmd = ['mount']
    if options:
        cmd += ['-o', options]
    call(cmd + ['--', device, target], progress)
    return True


def mount_tree(plan, progress, *, root, dest=False):
    mounted = []
    for part in mount_order(plan.partitions):
        target = mount_target(root, part.mount_point)
        if dest:
            mount_once(plan.dest_mount_device(part), target, progress)
        else:
            mount_once(part.source_mount_device, target, progress, 'ro')
        mounted.append((part, target))
    return mounted


def check_source_tree(source_root, progress):
    fstab = os.path.join(source_root, 'etc', 'fstab')
    if not os.path.isfile(fstab):
        fail(progress,
             '{} not found, the source mount looks wrong. Check that the '
             'source partitions are correct and try again.'.format(fstab))


def merge_excludes(fixed, extra):
    merged = list(fixed)
    for pattern in extra:
        if pattern not in merged:
            merged.append(pattern)
    return merged


def transfer_command(source_root, dest_root, excludes=()):
    cmd = ['rsync'] + TRANSFER_ARGS
    for pattern in merge_excludes(TRANSFER_EXCLUDES, excludes):
        cmd.append('--exclude=' + pattern)
    return cmd + [source_root.rstrip('/') + '/', dest_root.rstrip('/') + '/']


def run_transfer(cmd, progress):
    progress.notify_command(cmd)
    returncode = subprocess.call(cmd)
    if returncode != 0:
        err = TransferFailed(returncode)
        progress.notify_error(
            'The transfer failed (rsync exit status {}).\n'
            'The destination layout is saved; fix the cause and run again '
            'with --resume,\nadding --exclude=PATTERN to skip problem files.'
            .format(returncode), err)
        raise err


def recreate_skeleton(dest_root):
    for name in SKELETON_DIRS:
        os.makedirs(os.path.join(dest_root, name), exist_ok=True)


def mount_and_transfer(
    plan, progress, *, source_root, dest_root, excludes, dry_run,
):
    cmd = transfer_command(source_root, dest_root, excludes)
    if dry_run:
        progress.notify(
            '[DRY RUN] Would mount the source under {} and the destination '
            'under {}'.format(source_root, dest_root))
        progress.notify('[DRY RUN] Would run: ' + ' '.join(
            shlex.quote(arg) for arg in cmd))
        return

    progress.notify('==> Mounting source partitions...')
    mount_tree(plan, progress, root=source_root)
    check_source_tree(source_root, progress)
    progress.notify('==> Mounting destination partitions...')
    mount_tree(plan, progress, root=dest_root, dest=True)

    for pattern in excludes:
        progress.notify('    Extra exclude: {}'.format(pattern))
    progress.notify('==> Copying the filesystem, this may take a while...')
    run_transfer(cmd, progress)
    recreate_skeleton(dest_root)
    progress.notify('==> Transfer complete.')


# Boot configuration

def fstab_entries(plan, uuid_of):
    """(spec, file, vfstype, options, dump, passno) for each partition.

    options is a list of (name, value) pairs, value may be None.
    """

    entries = []
    for part in plan.partitions:
        if part.is_encrypted:
            spec = plan.dest_mount_device(part)
        else:
            spec = 'UUID=' + uuid_of(part.dest_device)
        if part.role == 'swap':
            entries.append(
                (spec, 'none', 'swap', [('defaults', None)], '0', '0'))
            continue
        if part.role == 'efi':
            options = [('umask', '0077')]
        else:
            options = [('defaults', None)]
        passno = '1' if part.role == 'root' else '2'
        entries.append(
            (spec, part.mount_point, part.dest_fstype, options, '0', passno))
    return entries


def crypttab_names(plan, previous):
    # Keep whatever names the installed system already used
    names = []
    for idx, part in enumerate(plan.encrypted_partitions()):
        if idx < len(previous) and previous[idx]:
            names.append(previous[idx])
        else:
            names.append(mapper_name(CRYPTTAB_NAME, idx))
    return names


def open_etc(dest_root):
    import augeas

    aug = augeas.Augeas(
        root=dest_root, flags=augeas.Augeas.NO_MODL_AUTOLOAD)
    for lens, path in (('Fstab', '/etc/fstab'), ('Crypttab', '/etc/crypttab')):
        aug.set('/augeas/load/{}/lens'.format(lens), lens + '.lns')
        aug.set('/augeas/load/{}/incl'.format(lens), path)
    aug.load()
    return aug


def previous_crypttab_names(aug):
    return [aug.get(path) for path in aug.match('/files/etc/crypttab/*/target')]


def write_fstab_entries(aug, entries):
    aug.remove('/files/etc/fstab/*')
    aug.set('/files/etc/fstab/#comment', 'Generated by diskmigrate')
    for num, (spec, file, vfstype, options, dump, passno) in enumerate(
        entries, 1
    ):
        base = '/files/etc/fstab/{}'.format(num)
        aug.set(base + '/spec', spec)
        aug.set(base + '/file', file)
        aug.set(base + '/vfstype', vfstype)
        for idx, (name, value) in enumerate(options, 1):
            aug.set('{}/opt[{}]'.format(base, idx), name)
            if value is not None:
                aug.set('{}/opt[{}]/value'.format(base, idx), value)
        aug.set(base + '/dump', dump)
        aug.set(base + '/passno', passno)


def write_crypttab_entries(aug, entries):
    aug.remove('/files/etc/crypttab/*')
    aug.set('/files/etc/crypttab/#comment', 'Destination LUKS mappings')
    for num, (target, device, password, options) in enumerate(entries, 1):
        base = '/files/etc/crypttab/{}'.format(num)
        aug.set(base + '/target', target)
        aug.set(base + '/device', device)
        aug.set(base + '/password', password)
        for idx, name in enumerate(options, 1):
            aug.set('{}/opt[{}]'.format(base, idx), name)


def rewrite_mapper_refs(aug, renames):
    for path in aug.match('/files/etc/fstab/*/spec'):
        new = renames.get(aug.get(path))
        if new is not None:
            aug.set(path, new)


def backup_file(path):
    if os.path.exists(path):
        shutil.copy2(path, path + '.bak')
        return True
    return False


def show_file(path, progress):
    with open(path) as fi:
        progress.notify(fi.read())


def device_uuid(devpath):
    return BlockDevice(devpath).fsuuid


def generate_configs(plan, progress, *, dest_root, dry_run, uuid_of=None):
    if uuid_of is None:
        uuid_of = device_uuid
    if dry_run:
        progress.notify('[DRY RUN] Would generate a new fstab{}'.format(
            ' and crypttab' if plan.has_encrypted_home else ''))
        return

    fstab = os.path.join(dest_root, 'etc', 'fstab')
    crypttab = os.path.join(dest_root, 'etc', 'crypttab')

    progress.notify('==> Generating new fstab...')
    had_fstab = backup_file(fstab)
    aug = open_etc(dest_root)
    write_fstab_entries(aug, fstab_entries(plan, uuid_of))
    aug.save()
    progress.notify('    New fstab:')
    show_file(fstab, progress)
    if had_fstab and not progress.confirm('    Does the fstab look correct?'):
        progress.notify(
            '    Restoring backup fstab. Edit {} manually before rebooting.'
            .format(fstab))
        shutil.copy2(fstab + '.bak', fstab)
        aug.load()

    if not plan.has_encrypted_home:
        return

    progress.notify('==> Generating crypttab...')
    names = crypttab_names(plan, previous_crypttab_names(aug))
    backup_file(crypttab)
    entries = []
    renames = {}
    for part, name in zip(plan.encrypted_partitions(), names):
        entries.append(
            (name, 'UUID=' + uuid_of(part.dest_device), 'none', ['luks']))
        # Otherwise the system boots with our temporary mapper name
        renames[plan.dest_mount_device(part)] = mapper_path(name)
    write_crypttab_entries(aug, entries)
    rewrite_mapper_refs(aug, renames)
    aug.save()
    show_file(crypttab, progress)
    progress.notify('    Updated fstab LUKS references to {}'.format(
        ', '.join(sorted(renames.values()))))


@contextlib.contextmanager
def chroot_mounts(dest_root, progress):
    with contextlib.ExitStack() as st:
        for what, where, args in CHROOT_MOUNTS:
            path = os.path.join(dest_root, where)
            os.makedirs(path, exist_ok=True)
            call(['mount'] + args + ['--', what, path], progress)
            st.callback(call, ['umount', '--', path], progress)
        what, where, args = EFIVARS_MOUNT
        path = os.path.join(dest_root, where)
        cmd = ['mount'] + args + ['--', what, path]
        progress.notify_command(cmd)
        if os.path.isdir(path) and subprocess.call(
            cmd, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL
        ) == 0:
            st.callback(call, ['umount', '--', path], progress)
        yield


def check_encrypt_hook(dest_root, progress):
    conf = os.path.join(dest_root, 'etc', 'mkinitcpio.conf')
    if not os.path.exists(conf):
        return
    with open(conf) as fi:
        if 'encrypt' in fi.read():
            return
    progress.notify(
        '    NOTE: no encrypt hook in mkinitcpio.conf.\n'
        '    If the encrypted partition is unlocked via crypttab, '
        'this is fine.\n'
        '    For early-boot decryption, add encrypt to HOOKS manually.')


def boot_commands(efi_mount):
    return [
        ('Reinstalling GRUB',
         ['grub-install', '--target=x86_64-efi',
          '--efi-directory=' + efi_mount, '--bootloader-id=GRUB']),
        ('Regenerating GRUB config',
         ['grub-mkconfig', '-o', '/boot/grub/grub.cfg']),
        ('Regenerating initramfs', ['mkinitcpio', '-P']),
    ]


def reinstall_boot(plan, progress, *, dest_root, dry_run):
    efi = plan.find_role('efi')
    efi_mount = efi.mount_point if efi is not None else DEFAULT_EFI_MOUNT
    if dry_run:
        progress.notify(
            '[DRY RUN] Would chroot into {}, reinstall GRUB '
            'and regenerate the initramfs'.format(dest_root))
        return

    progress.notify('==> Setting up chroot...')
    with chroot_mounts(dest_root, progress):
        if plan.has_encrypted_home:
            check_encrypt_hook(dest_root, progress)
        for title, cmd in boot_commands(efi_mount):
            progress.notify('==> {}...'.format(title))
            interactive_call(['chroot', dest_root] + cmd, progress)


# Cleanup

def mappers_to_close(plan):
    """Mapper names this run opened, destination first.

    Mappings that existed before the run are left alone.
    """

    names = [
        plan.dest_mapper_name(part) for part in plan.encrypted_partitions()
        if part.dest_opened_by_this_run]
    names += [
        part.mapper_name for part in plan.encrypted_partitions()
        if part.opened_by_this_run]
    return names


def release(cmd, progress):
    try:
        call(cmd, progress)
    except subprocess.CalledProcessError as err:
        progress.notify('    {} failed with status {}, continuing cleanup'
                        .format(' '.join(cmd), err.returncode))


def cleanup(plan, progress, *, source_root, dest_root):
    progress.notify('==> Cleaning up mounts...')
    for what, where, args in reversed(CHROOT_MOUNTS + (EFIVARS_MOUNT,)):
        path = os.path.join(dest_root, where)
        if os.path.ismount(path):
            release(['umount', '--', path], progress)
    for root in (dest_root, source_root):
        if os.path.ismount(root):
            release(['umount', '-R', '--', root], progress)
    for name in mappers_to_close(plan):
        release(['cryptsetup', 'close', '--', name], progress)
    for root in (dest_root, source_root):
        # Only succeeds once nothing is left mounted inside
        if os.path.isdir(root) and not os.path.ismount(root):
            try:
                os.rmdir(root)
            except OSError as err:
                progress.notify('    Left {} in place: {}'.format(
                    root, err.strerror))


def format_summary(plan):
    lines = ['=== Migration complete ===', '', 'Summary:']
    for part in plan.partitions:
        lines.append('  {}: {} -> {} ({}{})'.format(
            part.mount_point, part.device, part.dest_device or 'n/a',
            part.role, ', LUKS' if part.is_encrypted else ''))
    lines += [
        '',
        'Next steps:',
        '  1. Remove the source disk or change the boot order',
        '  2. Boot from the destination disk',
        '  3. Verify everything works',
    ]
    if plan.has_encrypted_home:
        lines.append(
            '  4. You should be prompted for your LUKS passphrase during boot')
    return '\n'.join(lines)


# Entry points

def ensure_root(progress):
    if os.geteuid() != 0:
        fail(progress, 'This must be run as root')


def missing_dependencies():
    return sorted({
        pkg for cmd, pkg in DEPENDENCIES.items()
        if shutil.which(cmd) is None})


def check_dependencies(progress):
    missing = missing_dependencies()
    if not missing:
        return
    if shutil.which('pacman') is None:
        fail(progress, 'Missing dependencies: {}'.format(' '.join(missing)))
    progress.notify('==> Missing dependencies: {}\n    Installing...'.format(
        ' '.join(missing)))
    interactive_call(
        ['pacman', '-Sy', '--needed', '--noconfirm'] + missing, progress)


def list_disks(progress):
    out = subprocess.check_output(
        'lsblk --json -d -b -o NAME,SIZE,TYPE,MODEL'.split(),
        universal_newlines=True)
    progress.notify('==> Available disks:')
    for dev in json.loads(out).get('blockdevices', []):
        if dev.get('type') != 'disk':
            continue
        progress.notify('  {:<10} {:>8}  {}'.format(
            dev['name'], human_size(int(dev.get('size') or 0)),
            (dev.get('model') or '').strip()))


def select_disk(value, prompt, progress):
    if value is None:
        value = progress.ask(prompt)
    if not value:
        fail(progress, 'No disk given')
    devpath = disk_path(value)
    if not is_block_device(devpath):
        fail(progress, '{} is not a valid block device'.format(devpath))
    if BlockDevice(devpath).is_partition:
        fail(progress, '{} is a partition, not a whole disk'.format(devpath))
    return devpath


def run_planning(plan, progress, *, source, dest, source_root, state_file,
                 dry_run):
    list_disks(progress)
    plan.source_disk = select_disk(
        source, 'Source disk (e.g. sda)', progress)
    discover_partitions(plan, progress)
    measure_usage(plan, progress, source_root=source_root)
    # Refuse the wrong disk before anything gets erased
    check_source_tree(source_root, progress)

    plan.dest_disk = select_disk(
        dest, 'Destination disk (e.g. sdb)', progress)
    if os.path.realpath(plan.dest_disk) == os.path.realpath(
            plan.source_disk):
        fail(progress, 'Source and destination cannot be the same disk')
    capacity = BlockDevice(plan.dest_disk).size
    progress.notify('Destination disk: {} ({})'.format(
        plan.dest_disk, human_size(capacity)))

    plan_layout(plan, capacity, progress)

    progress.notify(
        '!!! WARNING: This will ERASE ALL DATA on {} !!!'.format(
            plan.dest_disk))
    if not progress.confirm(
            'Proceed with partitioning {}?'.format(plan.dest_disk)):
        progress.notify('Aborted.')
        raise Aborted(0)
    partition_destination(
        plan, progress, state_file=state_file, dry_run=dry_run)


def raise_exit(signum, frame):
    # Unwind through the cleanup scope
    sys.exit(128 + signum)


def install_signal_handlers():
    for signum in (signal.SIGTERM, signal.SIGHUP):
        signal.signal(signum, raise_exit)


def cmd_migrate(args, progress):
    dry_run = args.dry_run
    source_root = args.source_root.rstrip('/') or '/'
    dest_root = args.dest_root.rstrip('/') or '/'

    if dry_run:
        progress.notify(
            '*** DRY RUN MODE, the destination will not be modified ***')
    ensure_root(progress)
    check_dependencies(progress)
    install_signal_handlers()

    with contextlib.ExitStack() as st:
        if args.resume:
            progress.notify('==> Restoring state from {}'.format(
                args.state_file))
            try:
                plan = load_plan(args.state_file)
            except PreconditionFailed as err:
                progress.notify_error(str(err), err)
                raise
            st.callback(
                cleanup, plan, progress,
                source_root=source_root, dest_root=dest_root)
            resume_plan(plan, progress)
            progress.notify(
                '==> Skipping discovery and partitioning (resume mode)')
        else:
            plan = MigrationPlan()
            st.callback(
                cleanup, plan, progress,
                source_root=source_root, dest_root=dest_root)
            run_planning(
                plan, progress, source=args.source, dest=args.dest,
                source_root=source_root, state_file=args.state_file,
                dry_run=dry_run)

        mount_and_transfer(
            plan, progress, source_root=source_root, dest_root=dest_root,
            excludes=args.excludes, dry_run=dry_run)
        generate_configs(plan, progress, dest_root=dest_root, dry_run=dry_run)
        if not args.skip_boot:
            reinstall_boot(plan, progress, dest_root=dest_root, dry_run=dry_run)
        progress.notify(format_summary(plan))


def main(argv=None):
    try:
        assert False
    except AssertionError:
        pass
    else:
        print('Assertions need to be enabled', file=sys.stderr)
        return 2

    parser = argparse.ArgumentParser(
        description='Migrate an installed system to another disk')
    parser.add_argument('--debug', action='store_true',
                        help='Print external commands as they run')
    parser.add_argument(
        '--dry-run', action='store_true',
        help='Describe partitioning, formatting, copying and config writes'
        ' instead of doing them')
    parser.add_argument(
        '--resume', action='store_true',
        help='Reload the saved layout and retry the copy;'
        ' skips discovery and partitioning')
    parser.add_argument(
        '--exclude', dest='excludes', action='append', default=[],
        metavar='PATTERN', help='Extra rsync exclusion, may be repeated')
    parser.add_argument('--source', metavar='DISK',
                        help='Source disk, prompted for when omitted')
    parser.add_argument('--dest', metavar='DISK',
                        help='Destination disk, prompted for when omitted')
    parser.add_argument('--state-file', default=STATE_FILE,
                        help='Checkpoint location (default: %(default)s)')
    parser.add_argument('--source-root', default=SOURCE_ROOT,
                        help='Source staging mount (default: %(default)s)')
    parser.add_argument('--dest-root', default=DEST_ROOT,
                        help='Destination staging mount'
                        ' (default: %(default)s)')
    parser.add_argument('--skip-boot', action='store_true',
                        help='Do not reinstall the bootloader or initramfs')

    args = parser.parse_args(argv)
    progress = CLIProgressHandler(debug=args.debug)
    try:
        return cmd_migrate(args, progress)
    except Aborted as err:
        return err.status


def script_main():
    sys.exit(main())


if __name__ == '__main__':
    script_main()
