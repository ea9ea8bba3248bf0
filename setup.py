from setuptools import setup, find_packages

setup(
    name="lgcp_spde",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*", "examples"]),
    install_requires=[
        "numpy>=1.20.0",
        "scipy>=1.8.0",
        "meshpy>=2020.1",
        "pyproj>=3.0.0",
        "shapely>=2.0",
        "pandas>=1.3.0",
        "matplotlib>=3.3.0",
    ],
    extras_require={
        "dev": [
            "pytest>=6.0",
            "pytest-cov>=2.10",
            "black>=21.0",
            "flake8>=3.8",
        ],
    },
    python_requires=">=3.8",
    description="Log-Gaussian Cox processes with SPDE random fields",
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
)
