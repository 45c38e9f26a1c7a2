#!/usr/bin/env python3

from setuptools import setup

setup(
    name='diskmigrate',
    version='0.1.0',
    license='GNU GPL',
    keywords='migration partitioning luks rsync fstab grub',
    description='Move an installed system to another disk',
    entry_points={
        'console_scripts': [
            'diskmigrate = diskmigrate.__main__:script_main',
            'pkgmigrate = pkgmigrate.__main__:script_main']},
    packages=[
        'diskmigrate',
        'pkgmigrate',
    ],
    install_requires=[
        'python-augeas', 'pyparted'],
    extras_require={
        'test': ['pytest']},
    classifiers='''
        Programming Language :: Python :: 3
        License :: OSI Approved :: GNU General Public License (GPL)
        Operating System :: POSIX :: Linux
        Intended Audience :: System Administrators
        Topic :: System :: Filesystems
        Topic :: System :: Installation/Setup
        Topic :: Utilities
        Environment :: Console
    '''.strip().splitlines(),
    long_description='''
    Migrate a Linux installation to a new disk.
    Plans the destination layout from measured usage,
    copies the system with rsync, and regenerates fstab,
    crypttab and the bootloader. Interrupted copies can be
    resumed from a saved checkpoint.

    pkgmigrate carries package lists, enabled services
    and modified configs to a fresh installation instead.''')
