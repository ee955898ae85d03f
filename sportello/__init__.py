"""
sportello - a chat bot that edits, searches and commits a web repository.
"""

__version__ = "0.1.0"
