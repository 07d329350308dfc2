from setuptools import setup, find_packages

setup(
    name="pysuv",
    version="0.1.0",
    description="Command-line client and daemon for supervising long-running programs",
    license="MIT",
    packages=find_packages(include=["pysuv", "pysuv.*"]),
    install_requires=[
        "typer>=0.9.0",
        "python-dotenv>=1.0.0",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    entry_points={
        "console_scripts": [
            "pysuv=pysuv.main:pysuv",
        ],
    },
    python_requires=">=3.10",
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
)
