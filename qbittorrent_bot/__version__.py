"""
版本信息
"""

__version__ = "1.2.0"
