import re

import setuptools

# version without importing the package
with open("pyhydrator/__init__.py", "r") as fh:
    version_tuple = re.search(r"version_tuple = \((\d+), (\d+), (\d+)\)", fh.read()).groups()
__version__ = '.'.join(version_tuple)

with open("README.md", "r") as fh:
    long_description = fh.read()

setuptools.setup(
    name="pyhydrator",
    version=__version__,
    author="pyhydrator contributors",
    description="Telemetry hydration and cache orchestrator for dashboard widgets",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=setuptools.find_packages(exclude=["*.tests", "*.tests.*"]),
    python_requires=">=3.10",
    install_requires=[
        'requests',
        'python-dotenv',
        'python-dateutil',
        'pydantic>=2.0',
        'pydantic-settings>=2.0',
        'fastapi',
        'uvicorn',
    ],
    extras_require={
        'test': [
            'pytest',
            'pytest-asyncio',
            'httpx',
        ],
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
)
