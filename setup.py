from setuptools import setup, find_packages

setup(
    name="codeindex",
    version="0.1.0",
    packages=find_packages(include=["codeindex", "codeindex.*"]),
    python_requires=">=3.10",
    install_requires=[
        "requests",
        "pyyaml",
        "numpy>=1.24",
        # Structural layer
        "networkx>=3.0",
        "tree-sitter>=0.22",
        "tree-sitter-python",
        "tree-sitter-javascript",
        "tree-sitter-typescript",
        "tree-sitter-java",
        "tree-sitter-c",
        "tree-sitter-cpp",
        "tree-sitter-go",
        "tree-sitter-rust",
        "tree-sitter-ruby",
        "tree-sitter-php",
        "tree-sitter-c-sharp",
        "watchdog>=3.0",
        "tqdm>=4.60",
    ],
    extras_require={
        # Semantic layer via the OpenAI embeddings API (install when needed)
        "semantic": [
            "openai>=1.0",
        ],
        "test": [
            "pytest>=7.0",
        ],
    },
    author="Uday Kanth",
    description="Local-first codebase indexing: symbol graphs, incremental updates and similarity search.",
)
