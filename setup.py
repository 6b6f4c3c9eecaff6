from setuptools import setup, find_packages
from pathlib import Path


def read_readme():
    this_directory = Path(__file__).parent
    readme_file = this_directory / 'README.md'
    if readme_file.exists():
        return readme_file.read_text(encoding='utf-8')
    return ""

def get_version():
    import re
    init_file = Path(__file__).parent / 'agebridge' / '__init__.py'
    if init_file.exists():
        content = init_file.read_text()
        match = re.search(r'__version__\s*=\s*["\']([^"\']+)["\']', content)
        if match:
            return match.group(1)
    return "0.1.0"


setup(
    name="agebridge",
    version=get_version(),
    author="agebridge contributors",
    description="Relational and Cypher access to PostgreSQL with Apache AGE: pooling, transactions, batch loading.",
    long_description=read_readme(),
    long_description_content_type='text/markdown',
    packages=find_packages(include=["agebridge", "agebridge.*"]),
    include_package_data=True,
    python_requires=">=3.11",
    install_requires=[
        "psycopg[binary]>=3.1",
        "psycopg-pool>=3.2",
        "pydantic>=2.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
            "pytest-asyncio>=0.21",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Software Development :: Libraries :: Python Modules",
        "Topic :: Database",
    ],
    keywords="postgresql apache-age cypher graph psycopg connection-pool",
)
