from setuptools import setup, find_packages
import pathlib

HERE = pathlib.Path(__file__).parent
README = (HERE / "README.md").read_text(encoding="utf-8")

setup(
    name="h2csmuggler",
    version="1.0.0",
    description="Detect and exploit h2c smuggling through HTTP/1.1 front-end proxies",
    long_description=README,
    long_description_content_type="text/markdown",
    license="MIT",
    packages=find_packages(exclude=("tests", "examples")),
    python_requires=">=3.9",
    install_requires=[
        "h2>=4.1.0",
        "httpx[http2]>=0.27.0",
        "requests>=2.31.0",
        "urllib3>=1.26",
        # only used when a custom --resolver is given
        "dnspython>=2.4.0",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    include_package_data=True,
    entry_points={
        "console_scripts": [
            "h2csmuggler=h2csmuggler.cli:main",
        ]
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Topic :: Security",
        "Environment :: Console",
    ],
)
