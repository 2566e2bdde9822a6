import os
import re
from codecs import open

from setuptools import find_packages
from setuptools import setup

# Based on https://github.com/pypa/sampleproject/blob/main/setup.py
# and https://python-packaging-user-guide.readthedocs.org/

here = os.path.abspath(os.path.dirname(__file__))

with open(os.path.join(here, "README.md"), encoding="utf-8") as f:
    long_description = f.read()
long_description_content_type = "text/markdown"

with open(os.path.join(here, "wsconnect/version.py")) as f:
    match = re.search(r'VERSION = "(.+?)"', f.read())
    assert match
    VERSION = match.group(1)

setup(
    name="wsconnect",
    version=VERSION,
    description="WebSocket client connections over caller-supplied asyncio streams, with on-demand TLS upgrade.",
    long_description=long_description,
    long_description_content_type=long_description_content_type,
    license="MIT",
    classifiers=[
        "License :: OSI Approved :: MIT License",
        "Development Status :: 4 - Beta",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3 :: Only",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Programming Language :: Python :: Implementation :: CPython",
        "Framework :: AsyncIO",
        "Topic :: Internet :: WWW/HTTP",
        "Topic :: Software Development :: Libraries",
        "Typing :: Typed",
    ],
    packages=find_packages(
        include=[
            "wsconnect",
            "wsconnect.*",
        ]
    ),
    include_package_data=True,
    python_requires=">=3.10",
    # https://packaging.python.org/en/latest/discussions/install-requires-vs-requirements/#install-requires
    # It is not considered best practice to use install_requires to pin dependencies to specific versions.
    install_requires=[
        "certifi>=2019.9.11",  # no semver here - this should always be on the last release!
        "cryptography>=38.0",
        "h11>=0.11",
        "pyOpenSSL>=23.0",
        "wsproto>=1.0,<2",
    ],
    extras_require={
        "dev": [
            "hypothesis>=5.8,<7",
            "pytest-asyncio>=0.21",
            "pytest-cov>=2.7.1",
            "pytest-timeout>=1.3.3",
            "pytest>=7",
        ],
    },
)
