"""
Qualys 容器传感器安装器安装配置
"""

from setuptools import setup, find_packages
from pathlib import Path

# 读取 README
readme_file = Path(__file__).parent / "README.md"
long_description = readme_file.read_text(encoding="utf-8") if readme_file.exists() else ""

setup(
    name="qcs-sensor-installer",
    version="1.0.0",
    author="Qualys Container Security Field Engineering",
    description="跨平台 Qualys 容器传感器安装/升级工具 (Docker, Podman, WSL, Kubernetes)",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests*", "docs*", "build*"]),
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: System Administrators",
        "Topic :: System :: Installation/Setup",
        "Topic :: System :: Systems Administration",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
    python_requires=">=3.10",
    install_requires=[
        "pyyaml>=6.0",
        "python-dotenv>=1.0.0",
        "rich>=13.0.0",
        "filelock>=3.12.0",
        "pydantic>=2.0.0",
        "tenacity>=8.2.0",
        "requests>=2.31.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-cov>=4.0.0",
            "black>=23.0.0",
            "isort>=5.12.0",
            "mypy>=1.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "qcs-sensor-install=qcs_sensor_installer.cli.main:main",
            "qcs-sensor-install-k8s=qcs_sensor_installer.cli.main:main_k8s",
            "qcs-sensor-lock-janitor=qcs_sensor_installer.cli.main:main_janitor",
        ],
    },
)
