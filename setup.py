"""
SiteAudit - crawl-and-analyze engine for website accessibility, SEO and performance audits
"""
from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

with open("requirements.txt", "r", encoding="utf-8") as fh:
    requirements = [line.strip() for line in fh if line.strip() and not line.startswith("#")]

setup(
    name="site-audit",
    version="0.1.0",
    author="Anthrasite",
    author_email="team@anthrasite.com",
    description="Site audit engine: per-page accessibility evidence, aggregated issues and audit scoring",
    long_description=long_description,
    long_description_content_type="text/markdown",
    url="https://github.com/anthrasite/site-audit",
    packages=find_packages(exclude=["tests", "tests.*", "scripts", "scripts.*"]),
    py_modules=["main"],
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Topic :: Software Development :: Libraries :: Python Modules",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.11",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.11",
    install_requires=requirements,
    extras_require={
        "test": [
            "pytest>=7.4",
            "pytest-asyncio>=0.21",
            "hypothesis>=6.88",
        ],
    },
    entry_points={
        "console_scripts": [
            "site-audit=core.cli:main",
        ],
    },
    include_package_data=True,
    package_data={
        "site_audit": ["static/*.js"],
    },
)
