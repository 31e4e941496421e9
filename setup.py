import os
import re

from setuptools import setup

long_description = """
swapout pushes the memory of a running process out to swap.  The process
is moved into a temporary memory cgroup with a very low limit, its RSS is
polled until it has shrunk below a target, and then the original limit is
put back and the cgroup is removed again.

Handy for parking a big idle process (a browser, an IDE, a VM) without
stopping it, to make room for something else.
"""

module = 'swapout'

basedir = os.path.dirname(os.path.abspath(__file__))

with open(os.path.join(basedir, '%s.py' % module)) as f:
    _moduletext = f.read()

def readmeta(fieldname):
    return re.search(r'__%s__\s*=\s*"(.*)"' % re.escape(fieldname), _moduletext).group(1).strip()

setup(
    name='swapout',
    version=readmeta('version'),
    description='Force a process into swap by temporarily squeezing it into a small memory cgroup',
    long_description=long_description.strip(),
    license='GPLv3+',

    author=readmeta('author'),
    author_email=readmeta('email'),

    py_modules=[module],
    zip_safe=False,
    python_requires='>=3.8',

    install_requires=[
        'PyYAML',
        'tomli; python_version < "3.11"',
    ],
    extras_require=dict(
        build=['twine', 'wheel'],
        test=['pytest'],
    ),

    entry_points={
        "console_scripts": ['swapout=%s:main' % module]
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Environment :: Console",
        "License :: OSI Approved :: GNU General Public License v3 or later (GPLv3+)",
        "Operating System :: POSIX :: Linux",
        "Topic :: Utilities",
        "Topic :: System :: Systems Administration",
        "Programming Language :: Python :: 3",
    ],
)
