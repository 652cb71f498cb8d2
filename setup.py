"""
Setup script for the Transcription Core
"""

from setuptools import setup, find_packages

with open("requirements.txt") as f:
    requirements = f.read().splitlines()
    # Remove comments and empty lines
    requirements = [r for r in requirements if r and not r.startswith("#")]

with open("README.md", encoding="utf-8") as f:
    long_description = f.read()

setup(
    name="transcribe-core",
    version="1.0.0",
    description="Lecture and video transcription pipeline with chunked concurrent speech-to-text",
    long_description=long_description,
    long_description_content_type="text/markdown",
    author="Your Name",
    packages=find_packages(include=["config", "config.*", "transcription", "transcription.*",
                                    "workers", "workers.*"]),
    py_modules=["cli"],
    install_requires=requirements,
    extras_require={
        "whisper": ["openai-whisper>=20231117"],
        "test": ["pytest>=7.4.0", "pytest-asyncio>=0.23.0", "httpx"],
    },
    entry_points={
        "console_scripts": [
            "transcribe-core=cli:cli",
        ],
    },
    python_requires=">=3.11",
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
