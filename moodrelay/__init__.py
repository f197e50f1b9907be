"""
MoodRelay: mood-aware chat relay in front of the DeepSeek chat API.
"""

__version__ = "0.3.0"
