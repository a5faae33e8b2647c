from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="adquery",
    version="1.0.0",
    author="LSA Technology Services",
    author_email="lsats@umich.edu",
    description="Active Directory search with paging, range retrieval, referrals and nested group membership resolution",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["adquery", "adquery.*", "scripts", "scripts.query"]),
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Development Status :: 3 - Alpha",
        "Intended Audience :: System Administrators",
        "Topic :: System :: Systems Administration",
    ],
    python_requires=">=3.9",
    install_requires=[
        "ldap3>=2.9",
        "keyring>=23.0.0",
        "python-dotenv>=0.15.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "ad-query=scripts.query.ad_query:main",
        ],
    },
)
