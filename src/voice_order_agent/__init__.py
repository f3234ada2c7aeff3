"""
Voice Order Agent: live voice ordering for a daily vegetable catalog.
"""

__version__ = "0.1.0"
