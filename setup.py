from setuptools import setup, find_packages

setup(
    name="ppg_engine",
    version="0.1.0",
    description="Finger photoplethysmography signal engine: filtering, contact quality and beat metrics",
    packages=find_packages(exclude=["tests", "tests.*"]),
    py_modules=["main"],
    python_requires=">=3.10",
    install_requires=[
        "numpy>=1.24",
        "scipy>=1.10",
        "PyWavelets>=1.4",
    ],
    extras_require={
        "dev": ["pytest>=7.4"],
    },
    entry_points={
        "console_scripts": [
            "ppg-engine=main:main",
        ]
    },
)
