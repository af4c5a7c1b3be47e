#!/usr/bin/env python3

# python setup.py sdist --format=zip,gztar

import os
import re
import sys

from setuptools import setup

if sys.version_info[:3] < (3, 11, 0):
    sys.exit("Error: WalletSync requires Python version >= 3.11.0...")

here = os.path.dirname(os.path.abspath(__file__))

with open(os.path.join(here, 'contrib/requirements/requirements.txt')) as f:
    requirements = f.read().splitlines()

with open(os.path.join(here, 'contrib/requirements/requirements-dev.txt')) as f:
    requirements_dev = f.read().splitlines()

with open(os.path.join(here, 'walletsync/version.py')) as f:
    version = re.search(r"^PACKAGE_VERSION = '([^']+)'", f.read(), re.MULTILINE).group(1)

setup(
    name="walletsync",
    version=version,
    python_requires='>=3.11',
    install_requires=requirements,
    extras_require={
        'test': requirements_dev,
    },
    packages=[
        'walletsync',
        'walletsync.util',
        'walletsync.tests',
    ],
    package_data={
        'walletsync': [
            'servers.json',
            'servers_testnet.json',
            'servers_regtest.json',
        ]
    },
    description="Wallet synchronization backend for Electrum protocol servers",
    license="MIT Licence",
    long_description="""Account synchronization, header verification and fiat valuation """
        """for wallets talking to ElectrumX servers"""
)
