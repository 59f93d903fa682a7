from setuptools import setup
from autobackup.version import version

long_description = """
A Python package that watches a directory and keeps every distinct content version of its files
as an immutable, timestamped backup copy. Changes are confirmed by SHA-256 content digests, and the
tracked-file table is persisted so that restarts neither re-copy unchanged files nor lose version
numbers.
"""

setup(name='autobackup',
      version=version,
      description='Versioned backups of the files in a watched directory.',
      long_description=long_description,
      python_requires='>=3.8',
      packages=['autobackup', ],
      py_modules=['autobackup_watch', ],
      entry_points={
          'console_scripts': ['autobackup-watch = autobackup_watch:main'],
      },
      extras_require={
          'test': ['pytest', 'hypothesis'],
      },
      )
