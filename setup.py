from setuptools import setup, find_packages


setup(
    name="stage3",
    version="0.1",
    packages=find_packages(include=["stage3", "stage3.*"]),
    description="Build, list, verify and extract permission-faithful base-system (stage3) archives.",
    python_requires=">=3.9",
    install_requires=[
        "zstandard>=0.22.0",
    ],
    entry_points={
        "console_scripts": [
            "stage3=stage3.cli:main",
        ]
    },
)
