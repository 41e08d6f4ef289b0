from setuptools import setup, find_packages

with open("README.md", "w") as f:
    f.write("""# Roku Bridge

Sends media streams from this computer to Roku devices on the local network.

## Features

- Roku discovery over SSDP, with an IP scan of common subnets as fallback
- Launches the bridge channel through the External Control Protocol (ECP)
- Falls back to the built-in Roku Media Player when the channel is missing
- Rewrites `127.0.0.1`/`localhost` stream URLs to the LAN address
- Stream container detection (HLS, DASH, MP4, MKV, AVI)

## Installation

```bash
pip install -e .
```

## Usage

```bash
python -m roku_bridge discover
python -m roku_bridge info 192.168.1.20
python -m roku_bridge send http://127.0.0.1:11470/stream.m3u8 --device 192.168.1.20
```

Settings are read from `config.json` in the user config directory
(`--config PATH` to use another file).

## Requirements

- Python 3.8+
- requests
- psutil
- appdirs
""")

setup(
    name="roku_bridge",
    version="0.1.0",
    description="Discover Roku devices and send streams to them over ECP",
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
    author="Roku Bridge Team",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "requests>=2.31.0",
        "psutil>=5.9.0",
        "appdirs>=1.4.4",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    python_requires=">=3.8",
    entry_points={
        "console_scripts": [
            "roku-bridge=roku_bridge.__main__:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: End Users/Desktop",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Topic :: Multimedia :: Video",
        "Topic :: Home Automation",
    ],
)
