#!/usr/bin/env python

from setuptools import setup

setup(
    name='demoterm',
    version='0.1.0',
    license='BSD 3-clause license',
    description='Record terminal sessions as animated GIFs',
    long_description='A Linux terminal recorder written in Python which '
                     'captures your command line sessions in the background '
                     'and replays them as GIF or SVG animations.',
    classifiers=[
        'Environment :: Console',
        'Intended Audience :: Developers',
        'License :: OSI Approved :: BSD License',
        'Operating System :: MacOS',
        'Operating System :: POSIX :: BSD',
        'Operating System :: POSIX :: Linux',
        'Programming Language :: Python',
        'Programming Language :: Python :: 3',
        'Topic :: System :: Shells',
        'Topic :: Terminals'
    ],
    python_requires='>=3.8',
    packages=[
        'demoterm',
        'demoterm.tests'
    ],
    entry_points={
        'console_scripts': [
            'demoterm=demoterm.main:main',
        ],
    },
    install_requires=[
        'lxml',
        'Pillow>=10.1',
        'wcwidth',
    ],
    extras_require={
        'dev': [
            'coverage',
            'pylint',
            'twine',
            'wheel',
        ]
    }
)
