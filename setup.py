from setuptools import setup, find_packages


def read_requirements():
    try:
        with open("requirements.txt", "r") as f:
            return [line.strip() for line in f if line.strip() and not line.startswith("#")]
    except FileNotFoundError:
        return ["redis>=5.0.1"]


setup(
    name="trending-pipeline",
    version="0.1.0",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    py_modules=[
        "background_jobs",
        "config",
        "errors",
        "job_logger",
        "job_queue",
        "job_worker",
        "main",
        "models",
        "partition_manager",
        "scheduler",
        "trending_cache",
        "trending_service",
    ],
    python_requires=">=3.10",
    install_requires=read_requirements(),
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.23.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "trending-pipeline=main:main",
        ],
    },
)
