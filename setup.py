# setup.py

from setuptools import setup, find_packages

VERSION = "0.1.0"
DESCRIPTION = "scRNA-seq workshop pipeline: QC, clustering, pseudobulk differential expression, composition and communication."
try:
    with open("README.md", "r", encoding="utf-8") as fh:
        LONG_DESCRIPTION = fh.read()
except FileNotFoundError:
    LONG_DESCRIPTION = DESCRIPTION

setup(
    name="scrnaseq_workshop",
    version=VERSION,
    description=DESCRIPTION,
    long_description=LONG_DESCRIPTION,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests*", "docs*", "examples*"]),
    install_requires=[
        "scanpy>=1.10",
        "anndata>=0.8",
        "pandas>=1.5",
        "numpy>=1.21",
        "scipy>=1.9",
        "matplotlib>=3.5",
        "PyYAML>=6.0",
        "leidenalg>=0.9",
        "igraph>=0.10",
        "scikit-misc>=0.1.4",
        "scikit-learn>=1.1",
        "scikit-image>=0.20",
        "statsmodels>=0.13",
        "pydeseq2>=0.5",
        "decoupler>=2.0",
        "celltypist>=1.2",
    ],
    extras_require={
        "test": ["pytest>=7"],
    },
    python_requires=">=3.10",
    classifiers=[
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Operating System :: OS Independent",
        "Intended Audience :: Science/Research",
        "Topic :: Scientific/Engineering :: Bio-Informatics",
    ],
    entry_points={
        'console_scripts': [
            'scrnaseq-workshop=scrnaseq_workshop.cli:main',
        ],
    }
)
