from setuptools import setup, find_packages

setup(
    name="conefdk",
    version="1.0.0",
    description="Cone-beam CT FDK reconstruction with CPU/CUDA projectors and inline streaming reconstruction",
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "numpy",
        "numba",
        "torch",
        "loguru",
        "PyYAML",
        "dacite",
        "h5py",
        "tifffile",
    ],
    extras_require={
        "test": [
            "pytest",
        ],
    },
    entry_points={
        "console_scripts": [
            "conefdk-fdk=conefdk.cli:main_fdk",
            "conefdk-inline=conefdk.cli:main_inline",
            "conefdk-forward=conefdk.cli:main_forward",
            "conefdk-phantom=conefdk.cli:main_phantom",
            "conefdk-fov=conefdk.cli:main_fov",
        ],
    },
    license="Apache 2.0",
    classifiers=[
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "License :: OSI Approved :: Apache Software License",
        "Operating System :: OS Independent",
        "Topic :: Scientific/Engineering :: Medical Science Apps",
    ],
    python_requires=">=3.10",
)
