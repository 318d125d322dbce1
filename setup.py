"""
Setup configuration for the incremental VIO backend.
"""

from setuptools import setup, find_packages

setup(
    name="vio-backend",
    version="0.1.0",
    description="Incremental visual-inertial estimation backend with IMU preintegration "
                "and regularity-aware factor lifecycle management",
    author="VIO Backend Team",
    packages=find_packages(include=["vio_backend", "vio_backend.*"]),
    python_requires=">=3.8",
    install_requires=[
        "numpy>=1.24.0",
        "scipy>=1.10.0",
        "pydantic>=2.0.0",
        "pyyaml>=6.0",
        "typer>=0.9.0",
        "rich>=13.0.0",
        "gtsam>=4.3",
    ],
    extras_require={
        "dev": [
            "pytest>=7.3.0",
            "pytest-cov>=4.0.0",
            "black>=23.0.0",
            "isort>=5.12.0",
            "mypy>=1.3.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "vio-backend=vio_backend.cli:main",
        ],
    },
)
