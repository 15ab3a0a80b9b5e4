from setuptools import setup, find_packages
from pathlib import Path

# Read README
readme_path = Path(__file__).parent / "README.md"
long_description = ""
if readme_path.exists():
    with open(readme_path, encoding="utf-8") as f:
        long_description = f.read()

install_requires = [
    "click>=8.0.1",
    "rich>=10.0.0",
    "pyyaml>=5.4.1",
    "toml>=0.10.2",
    "python-dotenv>=0.19.0",
    "structlog>=21.1.0",
    "requests>=2.26.0",
    "packaging>=21.0",
    "watchdog>=2.1.0",
]

# Optional extras
extras_require = {
    "dev": [
        "pytest>=6.2.4",
        "pytest-cov>=2.12.1",
        "pytest-asyncio>=0.21.0",
        "pytest-mock>=3.6.1",
        "black>=21.7b0",
        "flake8>=3.9.2",
        "mypy>=0.910",
    ],
}

setup(
    name="quarry-plugins",
    version="0.1.0",
    author="Quarry Team",
    description="Plugin runtime for the Quarry document viewer",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*", "plugins", "plugins.*"]),
    python_requires=">=3.10",
    install_requires=install_requires,
    extras_require=extras_require,
    entry_points={
        "console_scripts": [
            "quarry-plugins=quarry.cli:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Topic :: Software Development :: Libraries :: Application Frameworks",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Operating System :: OS Independent",
    ],
    keywords="plugins extensions document-viewer markdown",
    include_package_data=True,
)
