from setuptools import setup, find_packages

setup(
    name="tomcat-operator",
    version="0.1.0",
    description="Kubernetes operator for managing Tomcat custom resources",
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    package_data={"tomcat_operator": ["manifests/*.yaml"]},
    include_package_data=True,
    python_requires=">=3.11",
    install_requires=[
        "kopf>=1.37.0",
        "kubernetes>=28.1.0",
        "pyyaml>=6.0",
        "tenacity>=8.2.0",
        "urllib3>=1.26",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
            "pytest-asyncio>=0.21",
        ],
    },
    entry_points={
        "console_scripts": [
            "tomcat-operator=tomcat_operator.operator:main",
        ],
    },
)
