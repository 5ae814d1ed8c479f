#!/usr/bin/env python

from setuptools import find_packages, setup

from nestedset import __version__

install_requires = [
    "Django>=4.2",
]

# Testing dependencies
testing_extras = [
    "pytest>=7.0",
    "pytest-django>=4.5",
]

setup(
    name="django-nestedset",
    version=__version__,
    description="Nested Sets trees for Django models",
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
    license="BSD",
    packages=find_packages(),
    include_package_data=True,
    python_requires=">=3.8",
    classifiers=[
        "Development Status :: 4 - Beta",
        "Environment :: Web Environment",
        "Framework :: Django",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: BSD License",
        "Operating System :: OS Independent",
        "Programming Language :: Python",
        "Programming Language :: Python :: 3",
        "Topic :: Database",
    ],
    install_requires=install_requires,
    extras_require={
        "testing": testing_extras,
    },
    zip_safe=False,
)
