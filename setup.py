#!/usr/bin/env python
""" Lazy relationships for serializers: a solution to the N+1 problem """

from setuptools import setup, find_packages

setup(
    name='lazyrelationships',
    version='1.0.0',
    author='Mark Vartanyan',
    author_email='kolypto@gmail.com',

    license='BSD',
    description=__doc__,
    long_description=open('README.md').read(),
    long_description_content_type='text/markdown',
    keywords=['sqlalchemy', 'nplus1', 'serialization', 'batch loading'],

    packages=find_packages(exclude=('tests',)),
    scripts=[],
    entry_points={},

    python_requires='>= 3.8',
    install_requires=[
        'sqlalchemy >= 2.0.0',
        'funcy',
    ],
    extras_require={
        'test': ['pytest'],
    },
    include_package_data=True,

    platforms='any',
    classifiers=[
        # https://pypi.python.org/pypi?%3Aaction=list_classifiers
        'Programming Language :: Python :: 3',
        'Development Status :: 5 - Production/Stable',
        'Intended Audience :: Developers',
        'Operating System :: OS Independent',
    ],
)
