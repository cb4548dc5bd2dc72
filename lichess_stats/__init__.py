"""
Lichess stats engine: profile, performance, openings, comparison and rating
chart queries over the Lichess API.
"""

__version__ = "1.0.0"
