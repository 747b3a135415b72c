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

with open(os.path.join(here, "tlsmimic/version.py")) as f:
    match = re.search(r'VERSION = "(.+?)"', f.read())
    assert match
    VERSION = match.group(1)

setup(
    name="tlsmimic",
    version=VERSION,
    description="Browser-like TLS handshakes and async TLS streams on top of OpenSSL.",
    long_description=long_description,
    long_description_content_type=long_description_content_type,
    license="MIT",
    classifiers=[
        "License :: OSI Approved :: MIT License",
        "Development Status :: 4 - Beta",
        "Framework :: AsyncIO",
        "Operating System :: MacOS",
        "Operating System :: POSIX",
        "Operating System :: Microsoft :: Windows",
        "Programming Language :: Python :: 3 :: Only",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Programming Language :: Python :: Implementation :: CPython",
        "Topic :: Security :: Cryptography",
        "Topic :: Internet :: WWW/HTTP",
        "Topic :: System :: Networking",
        "Typing :: Typed",
    ],
    packages=find_packages(
        include=[
            "tlsmimic",
            "tlsmimic.*",
        ]
    ),
    include_package_data=True,
    python_requires=">=3.10",
    # https://packaging.python.org/en/latest/discussions/install-requires-vs-requirements/#install-requires
    # It is not considered best practice to use install_requires to pin dependencies to specific versions.
    install_requires=[
        "certifi>=2019.9.11",  # no semver here - this should always be on the last release!
        "cryptography>=42.0",
        "kaitaistruct>=0.10,<0.12",
        "pyOpenSSL>=24.3",
    ],
    extras_require={
        "dev": [
            "hypothesis>=6.0,<7",
            "pytest-asyncio>=0.23",
            "pytest-timeout>=2.1",
            "pytest>=7.0",
        ],
    },
)
