from setuptools import setup, find_packages

setup(
    name="ventureq",
    version="1.0.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "click>=8.0.0",
        "flask>=2.2.0",
        "redis>=4.2.0",
        "apscheduler>=3.10,<4",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
            "fakeredis>=2.10",
        ],
    },
    entry_points={
        'console_scripts': [
            'ventureq=ventureq.cli:cli',
        ],
    },
    python_requires='>=3.10',
    description="Redis-backed background job scheduling for opportunity detection, business launch steps and metrics aggregation, with exponential backoff retries, cron recurrences and lifecycle events",
    license="MIT",
    keywords="job-queue background-jobs redis scheduler cron retries worker-pool",
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Topic :: Software Development :: Libraries :: Python Modules",
        "Topic :: System :: Distributed Computing",
    ],
)
