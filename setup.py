#!/usr/bin/env python
from setuptools import setup
setup(
    name='httpbatch',
    version='2.0',
    description='HTTP Request Batching',
    author='Six Apart',
    author_email='python@sixapart.com',
    url='http://sixapart.github.com/batchhttp/',

    packages=['httpbatch'],
    provides=['httpbatch'],
    python_requires='>=3.8',
    install_requires=[
        'Twisted[tls]>=22.10.0',
        'zope.interface>=5.0',
        'httplib2>=0.18.0',
    ],
    extras_require={
        'test': ['pytest'],
    },
    entry_points={
        'console_scripts': [
            'httpbatch-proxy = httpbatch.batchproxy:main',
        ],
    },
)
