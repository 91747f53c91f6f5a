from setuptools import setup, find_packages

setup(
    name="clupatra",
    version="0.1.0",
    description="Nearest-neighbour clustering and fitter-driven pattern recognition for TPC tracking",
    author="Your Name",
    author_email="your.email@example.com",
    packages=find_packages(include=["clupatra", "clupatra.*"]),
    python_requires=">=3.10",
    install_requires=[
        # Runtime dependencies
        "numpy",
        "numba",
        "pandas",
        "matplotlib",
        "scipy",
        "networkx",
        "orjson",
    ],
    extras_require={
        # Optional speed/profiling stack
        "speed": [
            "scalene>=1.5.49; platform_system != 'Windows'",
            "py-spy>=0.3.14",
        ],
        # Developer extras
        "dev": [
            "pytest",
            "black",
            "mypy",
        ],
    },
    entry_points={
        "console_scripts": [
            "clupatra=clupatra.main:main",
        ],
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "Operating System :: OS Independent",
    ],
)
