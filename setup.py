import setuptools

with open("passfs/.version") as f:
    version = f.read().strip()

setuptools.setup(
    name="passfs",
    version=version,
    python_requires=">=3.11",
    license="Apache-2.0",
    entry_points={"console_scripts": ["passfs = passfs.__main__:main"]},
    packages=["passfs"],
    package_data={"passfs": [".version", "py.typed"]},
    install_requires=[
        "appdirs",
        "click",
        "llfuse",
    ],
    extras_require={
        "test": [
            "pytest",
        ],
    },
)
