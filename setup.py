from setuptools import setup, find_namespace_packages

setup(
    name="stackvisor",
    version="0.1.0",
    description="Supervisor for a local AI stack: health-gated startup, tunnel and volumes",
    packages=find_namespace_packages(where="src", include=["stackvisor*"]),
    package_dir={"": "src"},
    python_requires=">=3.12",
    install_requires=[
        "pydantic>=2.0",
        "pyyaml>=6.0",
        "click>=8.0",
        "psutil>=5.9",
        "tenacity>=8.0",
        "python-dotenv>=1.0",
        "jinja2>=3.0",
        "httpx>=0.24",
        "loguru>=0.7",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "stackvisor=stackvisor.CLI.main:main",
        ],
    },
)
