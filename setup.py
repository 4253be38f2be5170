from setuptools import setup, find_packages

setup(
    name="stackship",
    version="0.1.0",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    install_requires=[
        "pydantic>=2.0",
        "pyyaml>=6.0",
        "click>=8.0",
        "tenacity>=8.0",
        "python-dotenv>=1.0",
        "jinja2>=3.0",
        "docker>=6.1",
        "requests>=2.31",
    ],
    extras_require={
        "test": ["pytest>=7.0", "psutil>=5.9"],
        "dev": ["black>=23.0"],
    },
    entry_points={
        "console_scripts": [
            "stackship=stackship.CLI.main:main",
        ],
    },
)
