# -*- encoding: utf8 -*-
#
# Copyright (c) 2021-2022 ESET spol. s r.o.
# Author: Vladislav Hrčka <vladislav.hrcka@eset.com>
# See LICENSE file for redistribution.

from setuptools import setup

setup(
    name='ThemidaSpotter',
    version='1.0.0',
    py_modules=['ThemidaSpotter', 'MiasmBinaryView'],
    license='BSD',
    description='Tool to locate Themida/WinLicense virtualized and mutated code entries',
    classifiers=[
        "Development Status :: 4 - Beta",
        "Environment :: Console",
        "License :: OSI Approved :: BSD License",
        "Programming Language :: Python :: 3",
    ],
    python_requires='>=3.7',
    install_requires=[
        'miasm>=0.1.5',
    ],
    extras_require={
        'test': ['pytest'],
    },
    keywords=[
        "reverse engineering",
        "Themida",
        "WinLicense",
        "virtual machine",
        "mutation",
    ]
)
