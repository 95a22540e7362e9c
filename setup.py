"""Setup script for Mesa Sync."""

from setuptools import setup

# Read requirements
with open("requirements.txt") as f:
    requirements = [line.strip() for line in f if line.strip() and not line.startswith("#")]

# Read README for long description
with open("README.md", encoding="utf-8") as f:
    long_description = f.read()

setup(
    name="mesa-sync",
    version="1.0.0",
    author="Mesa Sync contributors",
    description="Authoritative session-state server for a shared tabletop RPG board",
    long_description=long_description,
    long_description_content_type="text/markdown",
    py_modules=[
        "event_payloads",
        "event_router",
        "fog_grid",
        "mesa_server",
        "room_registry",
        "session_state",
        "snapshot_store",
    ],
    install_requires=requirements,
    extras_require={
        "test": ["pytest", "httpx"],
    },
    python_requires=">=3.10",
    entry_points={
        "console_scripts": [
            "mesa-sync=mesa_server:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: End Users/Desktop",
        "Topic :: Games/Entertainment :: Role-Playing",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Operating System :: OS Independent",
    ],
    keywords="tabletop rpg virtual tabletop fog of war initiative websocket",
)
