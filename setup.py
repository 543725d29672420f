from setuptools import setup, find_packages

setup(
    name="memory_bank",
    version="1.0.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.10",
    install_requires=[
        "numpy>=1.22",
        "pyyaml",
        "tqdm>=4.60",
    ],
    extras_require={
        # Embedding backends (install the one you use)
        "local": [
            "sentence-transformers>=2.2",
        ],
        "openai": [
            "openai>=1.0",
        ],
        "test": [
            "pytest>=7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "memorybank=memory_bank.cli:main",
        ],
    },
    author="Uday Kanth",
    description="Persistent agent memory with semantic search and budgeted context selection.",
)
