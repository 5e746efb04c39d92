from setuptools import setup, find_packages

setup(
    name="unitpay",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    py_modules=["main", "cli"],
    install_requires=[
        "python-dotenv",
        "flask",
        "requests",
        "web3>=7",
        "eth-abi>=5",
        "diskcache",
        "click",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-mock",
            "hexbytes",
        ],
    },
    entry_points={
        "console_scripts": [
            "unitpay=cli:cli",
        ],
    },
    description="PayPal verification and on-chain settlement backend for UnitPay.",
    long_description=" ",
    long_description_content_type="text/markdown",
    url=" ",
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
    python_requires='>=3.9',
)
