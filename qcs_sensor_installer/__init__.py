"""
Qualys 容器传感器安装器
"""

__version__ = "1.0.0"
