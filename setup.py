"""
agentexec - Agent Execution Engine - Setup Configuration

Runs declarative AI agent definitions (LLM prompts, tool-calling routers,
sandboxed functions, HTTP and platform calls, image generation, composed
sub-agents) while streaming progress events and validating outputs.

License: MIT
"""

from setuptools import setup, find_packages
from pathlib import Path

# Read README for long description
readme_file = Path(__file__).parent / "README.md"
long_description = readme_file.read_text(encoding="utf-8") if readme_file.exists() else ""

# Core dependencies
core_deps = [
    # Definitions and output validation
    "pydantic>=2.11.9",
    "jsonschema>=4.23.0",
    "pyyaml>=6.0.2",
    # HTTP API, external platform and protocol-client calls
    "aiohttp>=3.12.15",
    # Prompt and parameter templates
    "jinja2>=3.1.4",
]

# Testing dependencies
test_deps = [
    "pytest>=8.4.1",
    "pytest-asyncio>=1.0.0",
    "pytest-mock>=3.14.1",
]

# Development dependencies
dev_deps = test_deps + [
    "pytest-cov>=6.2.1",
    # Code quality
    "black>=25.0.0",
    "flake8>=7.1.0",
    "mypy>=1.13.0",
]

setup(
    name="agentexec",
    version="0.1.0",

    # Package description
    description="Execution engine for declarative AI agent definitions with streamed progress events",
    long_description=long_description,
    long_description_content_type="text/markdown",

    # Package discovery
    packages=find_packages(where="src"),
    package_dir={"": "src"},

    # Python version requirement
    python_requires=">=3.11",

    # Dependencies
    install_requires=core_deps,

    # Optional dependencies (extras)
    extras_require={
        "test": test_deps,
        "dev": dev_deps,
    },

    # PyPI classifiers
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.12",
        "Programming Language :: Python :: 3.13",
        "Programming Language :: Python :: 3 :: Only",
        "Topic :: Scientific/Engineering :: Artificial Intelligence",
        "Topic :: Software Development :: Libraries :: Application Frameworks",
        "Framework :: AsyncIO",
    ],

    keywords=["ai", "agents", "llm", "execution", "tool-calling", "streaming", "workflow"],

    license="MIT",

    include_package_data=True,
    zip_safe=False,
)
