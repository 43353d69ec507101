from setuptools import setup, find_packages

setup(
    name="semantic-code-index",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "numpy>=1.24",
        "requests",
        "pyyaml",
        "watchdog>=3.0",
        "tqdm>=4.60",
    ],
    extras_require={
        # OpenAI-compatible embeddings (install separately when needed)
        "semantic": [
            "openai>=1.0",
        ],
        "test": [
            "pytest>=7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "semantic-index=semantic_index.cli:main",
        ],
    },
    author="Uday Kanth",
    description="Semantic code index: embedding search over a project's code spans.",
)
