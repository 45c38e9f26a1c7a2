# Python 3

import argparse
import grp
import os
import shutil
import subprocess
import sys
import tempfile
import time

from diskmigrate.__main__ import (
    Aborted, CLIProgressHandler, call, fail, interactive_call)


NATIVE_LIST = 'pkglist-native.txt'
AUR_LIST = 'pkglist-aur.txt'
SYSTEM_SERVICES = 'services-system.txt'
USER_SERVICES = 'services-user.txt'
GROUPS_LIST = 'user-groups.txt'
CONFIGS_LIST = 'modified-configs.txt'
CONFIGS_ARCHIVE = 'modified-configs.tar.gz'
PACMAN_CONF = '/etc/pacman.conf'
PACMAN_D = '/etc/pacman.d'
PARU_REPO = 'https://aur.archlinux.org/paru-bin.git'


def parse_lines(text):
    return [line.strip() for line in text.splitlines() if line.strip()]


def parse_units(text):
    # systemctl list-unit-files --no-legend: unit name, state, preset
    return [line.split()[0] for line in text.splitlines() if line.strip()]


def parse_modified(text):
    # pacman -Qii backup section: MODIFIED\t/etc/foo.conf
    rv = []
    for line in text.splitlines():
        items = line.split()
        if len(items) >= 2 and items[0] == 'MODIFIED':
            rv.append(items[1])
    return rv


def parse_groups(text, user):
    # The user's own primary group comes with useradd
    return [group for group in text.split() if group != user]


def read_manifest(export_dir, name):
    path = os.path.join(export_dir, name)
    if not os.path.exists(path):
        return None
    with open(path) as fi:
        return parse_lines(fi.read())


def write_manifest(export_dir, name, items):
    with open(os.path.join(export_dir, name), 'w') as fo:
        for item in items:
            fo.write(item + '\n')


def capture(cmd, progress):
    progress.notify_command(cmd)
    proc = subprocess.run(
        cmd, universal_newlines=True, stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE, stderr=subprocess.DEVNULL)
    # pacman -Qqem exits 1 when there is nothing foreign
    if proc.returncode != 0 and not proc.stdout:
        progress.notify('    {} exited with status {}'.format(
            ' '.join(cmd), proc.returncode))
    return proc.stdout


def cmd_export(args):
    progress = CLIProgressHandler(debug=args.debug)
    export_dir = args.directory or time.strftime('arch-migrate-%Y%m%d-%H%M%S')

    progress.notify('==> Creating export directory: {}'.format(export_dir))
    os.makedirs(export_dir, exist_ok=True)

    for title, cmd, name, parse in (
        ('native package list', ['pacman', '-Qqen'], NATIVE_LIST, parse_lines),
        ('AUR/foreign package list', ['pacman', '-Qqem'], AUR_LIST,
         parse_lines),
        ('enabled system services',
         'systemctl list-unit-files --state=enabled --no-legend'.split(),
         SYSTEM_SERVICES, parse_units),
        ('enabled user services',
         'systemctl --user list-unit-files --state=enabled --no-legend'
         .split(), USER_SERVICES, parse_units),
    ):
        progress.notify('==> Exporting {}...'.format(title))
        items = parse(capture(cmd, progress))
        write_manifest(export_dir, name, items)
        progress.notify('    {} entries'.format(len(items)))

    progress.notify('==> Exporting user groups...')
    user = os.environ.get('SUDO_USER')
    groups_cmd = ['id', '-nG']
    if user:
        groups_cmd.append(user)
    groups = capture(groups_cmd, progress).strip()
    with open(os.path.join(export_dir, GROUPS_LIST), 'w') as fo:
        fo.write(groups + '\n')
    progress.notify('    Groups: {}'.format(groups))

    progress.notify('==> Detecting modified config files...')
    configs = parse_modified(capture(['pacman', '-Qii'], progress))
    write_manifest(export_dir, CONFIGS_LIST, configs)
    progress.notify('    {} modified config files'.format(len(configs)))
    if configs:
        progress.notify('==> Archiving modified config files...')
        try:
            call(['tar', 'czf', os.path.join(export_dir, CONFIGS_ARCHIVE),
                  '-T', os.path.join(export_dir, CONFIGS_LIST)], progress)
        except subprocess.CalledProcessError:
            progress.notify(
                '    Warning: some config files could not be archived.\n'
                '    Run with sudo for a complete config backup.')

    progress.notify('==> Copying pacman configuration...')
    shutil.copy2(PACMAN_CONF, os.path.join(export_dir, 'pacman.conf'))
    if os.path.isdir(PACMAN_D):
        shutil.copytree(
            PACMAN_D, os.path.join(export_dir, 'pacman.d'),
            dirs_exist_ok=True)

    progress.notify(
        '\n=== Export complete ===\n'
        'Directory: {}/\n\n'
        'Next steps:\n'
        '  1. Copy this directory to the destination machine\n'
        '  2. Do a base install on the destination\n'
        '  3. Run: sudo pkgmigrate restore {}\n'
        '  4. rsync your home directory across'.format(export_dir, export_dir))


def as_user(user, cmd):
    return ['runuser', '-u', user, '--'] + cmd


def group_exists(name):
    try:
        grp.getgrnam(name)
    except KeyError:
        return False
    return True


def restore_pacman_config(export_dir, progress):
    conf = os.path.join(export_dir, 'pacman.conf')
    if os.path.isfile(conf):
        progress.notify('==> Pacman configuration')
        if progress.confirm(
                '    Replace {} with the exported version?'.format(
                    PACMAN_CONF)):
            shutil.copy2(PACMAN_CONF, PACMAN_CONF + '.bak')
            shutil.copy2(conf, PACMAN_CONF)
            progress.notify('    Backed up the original to {}.bak'.format(
                PACMAN_CONF))
    pacman_d = os.path.join(export_dir, 'pacman.d')
    if os.path.isdir(pacman_d):
        progress.notify('==> Pacman mirror/repo configs')
        if progress.confirm(
                '    Copy exported pacman.d configs to {}/?'.format(
                    PACMAN_D)):
            shutil.copytree(pacman_d, PACMAN_D, dirs_exist_ok=True)


def install_list(cmd, list_path, progress):
    # cmd reads the package names from stdin
    progress.notify_command(cmd)
    with open(list_path) as fi:
        return subprocess.call(cmd, stdin=fi)


def install_native(export_dir, progress):
    packages = read_manifest(export_dir, NATIVE_LIST)
    if packages is None:
        return
    progress.notify('==> Installing {} native packages...'.format(
        len(packages)))
    if install_list(['pacman', '-S', '--needed', '--noconfirm', '-'],
                    os.path.join(export_dir, NATIVE_LIST), progress) != 0:
        progress.notify(
            '\n    Warning: some packages failed to install.\n'
            '    This can happen if packages were removed from the repos.\n'
            '    Review the output above and install them manually.\n')
        if not progress.confirm('    Continue anyway?'):
            raise Aborted(1)


def bootstrap_paru(user, progress):
    progress.notify('==> paru not found, installing...')
    interactive_call(
        ['pacman', '-S', '--needed', '--noconfirm', 'base-devel', 'git'],
        progress)
    with tempfile.TemporaryDirectory() as build_dir:
        checkout = os.path.join(build_dir, 'paru-bin')
        interactive_call(['git', 'clone', PARU_REPO, checkout], progress)
        call(['chown', '-R', '{0}:{0}'.format(user), build_dir], progress)
        progress.notify_command(['makepkg', '-si', '--noconfirm'])
        subprocess.check_call(
            as_user(user, ['makepkg', '-si', '--noconfirm']), cwd=checkout)


def install_aur(export_dir, user, progress):
    packages = read_manifest(export_dir, AUR_LIST)
    if not packages:
        return
    progress.notify('==> {} AUR packages to install'.format(len(packages)))
    if shutil.which('paru') is None:
        bootstrap_paru(user, progress)
    progress.notify('==> Installing AUR packages...')
    if install_list(as_user(user, ['paru', '-S', '--needed', '--noconfirm', '-']),
                    os.path.join(export_dir, AUR_LIST), progress) != 0:
        progress.notify(
            '\n    Warning: some AUR packages failed to install.\n'
            '    Review the output above and install them manually with:\n'
            '    paru -S <package-name>\n')


def enable_services(units, cmd_prefix, progress):
    for unit in units:
        cmd = cmd_prefix + ['enable', unit]
        progress.notify_command(cmd)
        if subprocess.call(
            cmd, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL
        ) == 0:
            progress.notify('    Enabled: {}'.format(unit))
        else:
            progress.notify('    Skipped (not found): {}'.format(unit))


def restore_groups(export_dir, user, progress, exists=group_exists):
    path = os.path.join(export_dir, GROUPS_LIST)
    if not os.path.exists(path):
        return []
    progress.notify('==> Adding {} to groups...'.format(user))
    with open(path) as fi:
        groups = parse_groups(fi.read(), user)
    added = []
    for group in groups:
        if not exists(group):
            progress.notify(
                "    Skipped (group doesn't exist): {}".format(group))
            continue
        call(['usermod', '-aG', group, user], progress)
        progress.notify('    Added to: {}'.format(group))
        added.append(group)
    return added


def restore_configs(export_dir, progress, root='/'):
    configs = read_manifest(export_dir, CONFIGS_LIST)
    archive = os.path.join(export_dir, CONFIGS_ARCHIVE)
    if not configs or not os.path.isfile(archive):
        return
    progress.notify('==> {} modified config files available'.format(
        len(configs)))
    if not progress.confirm('    Review and restore modified configs?'):
        return

    with tempfile.TemporaryDirectory() as extracted:
        call(['tar', 'xzf', archive, '-C', extracted], progress)
        for config in configs:
            saved = os.path.join(extracted, config.lstrip('/'))
            target = os.path.join(root, config.lstrip('/'))
            if not os.path.isfile(saved):
                progress.notify('    Skipping (not in archive): {}'.format(
                    config))
                continue
            progress.notify('\n--- {} ---'.format(config))
            if os.path.isfile(target):
                # diff exits 1 when the files differ
                subprocess.call(['diff', '--color=auto', target, saved])
            else:
                progress.notify('    (file does not exist on destination)')
            if progress.confirm(
                    '    Replace {} with the exported version?'.format(
                        config)):
                os.makedirs(os.path.dirname(target), exist_ok=True)
                shutil.copy2(saved, target)
                progress.notify('    Restored: {}'.format(config))
            else:
                progress.notify('    Skipped: {}'.format(config))


def cmd_restore(args):
    progress = CLIProgressHandler(debug=args.debug)
    export_dir = args.directory
    if not os.path.isdir(export_dir):
        fail(progress, "Directory '{}' not found".format(export_dir))
    if os.geteuid() != 0:
        fail(progress, 'This must be run as root (sudo)')
    user = os.environ.get('SUDO_USER')
    if not user:
        fail(progress, 'Could not detect the regular user. '
             'Run with sudo, not as root directly.')

    restore_pacman_config(export_dir, progress)
    progress.notify('==> Syncing package databases and updating system...')
    interactive_call(['pacman', '-Syu', '--noconfirm'], progress)
    install_native(export_dir, progress)
    install_aur(export_dir, user, progress)

    units = read_manifest(export_dir, SYSTEM_SERVICES)
    if units is not None:
        progress.notify('==> Enabling system services...')
        enable_services(units, ['systemctl'], progress)
    units = read_manifest(export_dir, USER_SERVICES)
    if units:
        progress.notify('==> Enabling user services for {}...'.format(user))
        enable_services(
            units, as_user(user, ['systemctl', '--user']), progress)

    restore_groups(export_dir, user, progress)
    restore_configs(export_dir, progress)

    progress.notify(
        '\n=== Restore complete ===\n\n'
        'Remaining steps:\n'
        '  1. rsync your home directory from the source machine:\n'
        '     rsync -aAXHv --progress source:/home/{0}/ /home/{0}/\n'
        '  2. Reboot and verify everything works\n'
        '  3. Check for any services that need manual configuration'
        .format(user))


def main(argv=None):
    parser = argparse.ArgumentParser(
        description='Carry package lists, services and configs'
        ' between installations')
    parser.add_argument('--debug', action='store_true')
    commands = parser.add_subparsers(dest='command', metavar='command')

    sp_export = commands.add_parser(
        'export', help='Capture the state of this machine')
    sp_export.add_argument(
        'directory', nargs='?',
        help='Export directory (default: arch-migrate-<timestamp>)')
    sp_export.set_defaults(action=cmd_export)

    sp_restore = commands.add_parser(
        'restore', help='Apply an export on a fresh installation')
    sp_restore.add_argument('directory', help='Export directory')
    sp_restore.set_defaults(action=cmd_restore)

    args = parser.parse_args(argv)
    # Give help when no subcommand is given
    if args.command is None:
        parser.print_help()
        return

    try:
        return args.action(args)
    except Aborted as err:
        return err.status


def script_main():
    sys.exit(main())


if __name__ == '__main__':
    script_main()
