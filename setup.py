import setuptools
from importlib import metadata


# Check for existing OpenCV installation
opencv_pkg = None
try:
    metadata.distribution("opencv-python-headless")
    opencv_pkg = "opencv-python-headless"
except metadata.PackageNotFoundError:
    try:
        metadata.distribution("opencv-python")
        opencv_pkg = "opencv-python"
    except metadata.PackageNotFoundError:
        opencv_pkg = "opencv-python-headless"  # Default to headless if neither is installed


with open("README.md", "r") as fh:
    long_description = fh.read()


setuptools.setup(
    name="spcn",
    version="0.1.0",
    description="Structure-preserving color normalization for H&E histology images",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=setuptools.find_packages(include=['spcn', 'spcn.*']),
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: GNU General Public License v3 (GPLv3)",
        "Operating System :: OS Independent",
    ],
    python_requires='>=3.7',
    install_requires=[
        'numpy',
        opencv_pkg,
        'pillow>=6.0.0',
        'rich',
        'click',
    ],
    extras_require={
        'test': [
            'pytest',
        ],
    },
    entry_points={
        'console_scripts': [
            'spcn=spcn.__main__:main',
        ],
    },
)
