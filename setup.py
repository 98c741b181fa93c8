## @file setup.py
# This contains setup info for secure-boot-manager pip module
#
##
# Copyright (c) Microsoft Corporation
#
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
import setuptools

with open("readme.md", "r") as fh:
    long_description = fh.read()


setuptools.setup(
    name="secure-boot-manager",
    version="0.1.0",
    author="secure-boot-manager team",
    description="Owner managed UEFI Secure Boot: key hierarchy, signed unified kernel images and key enrollment",
    long_description=long_description,
    long_description_content_type="text/markdown",
    license='BSD-2-Clause-Patent',
    packages=setuptools.find_packages(include=["sbmanager", "sbmanager.*"]),
    package_data={
        'sbmanager.efi': ['templates/*.nsh'],
    },
    include_package_data=True,
    python_requires=">=3.9",
    entry_points={
        'console_scripts': ['secure-boot=sbmanager.secure_boot_tool:main']
    },
    install_requires=[
        'pyyaml>=5.2',
        'edk2-pytool-library>=0.21.0',
        'pefile>=2019.4.18',
        'cryptography>=39.0.0'
    ],
    extras_require={
        'test': ['pytest']
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: BSD License",
        "Operating System :: POSIX :: Linux",
        "Development Status :: 4 - Beta",
        "Intended Audience :: System Administrators"
    ]
)
