"""Build RemoteDesk package."""
import setuptools

with open("README.md") as f:
    long_desc = f.read()

client_requires = [
    "aiortc>=1.5.0",
    "cryptography>=39.0.1",
    "pyautogui>=0.9.54",
    "pyperclip>=1.8.2",
]

setuptools.setup(
    name="remotedesk",
    version="0.1.0",
    author="RemoteDesk Developers",
    description="Signaling relay and control channel for remote desktops",
    long_description=long_desc,
    long_description_content_type="text/markdown",
    packages=setuptools.find_packages(exclude=["tests", "tests.*"]),
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.10",
    install_requires=[
        "click",
        "pydantic>=2",
        "tomli ; python_version<'3.11'",
        "typing-extensions>=4.3.0 ; python_version<'3.11'",
        "websockets>=13",
    ],
    extras_require={
        "client": client_requires,
        "dev": [
            *client_requires,
            "pytest",
            "pytest-asyncio>=0.23.2",
            "pytest-timeout",
            "requests",
        ],
    },
    entry_points={
        "console_scripts": [
            "remotedesk-relay=remotedesk.relay.run:cli",
        ],
    },
)
