#!/usr/bin/env python3
"""
Setup script for rsync-stream

Installation:
    pip install .
    pip install -e .  # Development mode
    pip install -e .[dev]  # With test tools

Distribution:
    python setup.py sdist bdist_wheel
"""

from setuptools import setup
import re

# Read version from rsync_stream.py
with open('rsync_stream.py', 'r', encoding='utf-8') as f:
    content = f.read()
    version_match = re.search(r'^__version__\s*=\s*[\'"]([^\'"]*)[\'"]', content, re.MULTILINE)
    if version_match:
        version = version_match.group(1)
    else:
        raise RuntimeError("Unable to find version string in rsync_stream.py")

# Read long description from README
with open('README.md', 'r', encoding='utf-8') as f:
    long_description = f.read()

setup(
    name='rsync-stream',
    version=version,
    description='Streaming rsync signature/delta/patch transfer over a framed TCP connection with bounded memory.',
    long_description=long_description,
    long_description_content_type='text/markdown',
    py_modules=['rsync_stream'],
    python_requires='>=3.8',
    install_requires=[
        'xxhash>=3.0.0',
        'lz4>=4.0.0',
        'zstandard>=0.20.0',
    ],
    extras_require={
        'dev': [
            'pytest>=7.0.0',
            'pytest-cov>=4.0.0',
            'mypy>=1.0.0',
            'black>=23.0.0',
            'flake8>=6.0.0',
            'isort>=5.12.0',
        ],
    },
    entry_points={
        'console_scripts': [
            'rsync-stream=rsync_stream:main',
        ],
    },
    classifiers=[
        'Development Status :: 4 - Beta',
        'Intended Audience :: Developers',
        'Intended Audience :: System Administrators',
        'License :: OSI Approved :: GNU General Public License v3 or later (GPLv3+)',
        'Operating System :: OS Independent',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.8',
        'Programming Language :: Python :: 3.9',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'Topic :: System :: Archiving :: Mirroring',
        'Topic :: System :: Networking',
        'Topic :: Utilities',
    ],
    keywords='rsync delta signature patch streaming tcp',
    license='GPL-3.0-or-later',
    platforms=['any'],
    zip_safe=False,
)
