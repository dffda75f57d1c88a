#!/usr/bin/env -S python3 -B -u
"""
Setup script for sitesim package - Site Simulator
"""

from setuptools import setup, find_packages
import os

# Read the README file for long description
def read_readme():
    """Read README.md for package long description."""
    readme_path = os.path.join(os.path.dirname(__file__), 'README.md')
    if os.path.exists(readme_path):
        with open(readme_path, 'r', encoding='utf-8') as f:
            return f.read()
    return "Site Simulator - multi-site process topology orchestrator for system tests"

# Read requirements from requirements.txt
def read_requirements():
    """Read requirements from requirements.txt file."""
    requirements_path = os.path.join(os.path.dirname(__file__), 'requirements.txt')
    if os.path.exists(requirements_path):
        with open(requirements_path, 'r', encoding='utf-8') as f:
            return [line.strip() for line in f if line.strip() and not line.startswith('#')]
    return []

# Define package metadata
setup(
    name='sitesim',
    version='1.0.0',
    description='Site Simulator - multi-site process topology orchestrator for system tests',
    long_description=read_readme(),
    long_description_content_type='text/markdown',
    author='Site Simulator Developers',
    author_email='',
    license='MIT',

    # Package structure - use sitesim namespace
    packages=['sitesim'] + ['sitesim.' + pkg for pkg in find_packages(where='src')],
    package_dir={
        'sitesim': 'src',
    },

    # Python version requirement
    python_requires='>=3.7',

    # Dependencies from requirements.txt
    install_requires=read_requirements(),

    # Optional dependencies
    extras_require={
        'dev': [
            'pytest>=6.0.0',
            'pytest-cov>=2.0.0',
            'flake8>=3.8.0',
        ],
    },

    # Entry points for command-line scripts
    entry_points={
        'console_scripts': [
            'sitesim=sitesim.cli:main',
        ],
    },

    # Classification
    classifiers=[
        'Development Status :: 4 - Beta',
        'Intended Audience :: Developers',
        'License :: OSI Approved :: MIT License',
        'Operating System :: POSIX :: Linux',
        'Programming Language :: Python :: 3',
        'Topic :: Software Development :: Testing',
        'Topic :: System :: Distributed Computing',
    ],

    # Keywords
    keywords='testing simulation multi-site cluster process supervision',
)
