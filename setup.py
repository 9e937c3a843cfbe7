from setuptools import setup, find_namespace_packages

setup(
    name="experiment-decision-engine",
    version="1.0.0",
    packages=find_namespace_packages(include=["src", "src.*"], exclude=["*.__pycache__"]),
    python_requires=">=3.8",
    install_requires=[
        "pandas>=1.5.0",
        "numpy>=1.21.0",
        "scipy>=1.7.0",
        "Jinja2>=3.0.0",
        "APScheduler>=3.9,<4",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
)
