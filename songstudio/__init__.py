"""
Song Studio

Backend for managing devotional-song metadata:
1. Songs, singers and per-singer pitches
2. Presentation templates and live session playlists
3. Write-through in-memory cache over the relational store
4. Compressed offline bundles for "take offline" downloads
"""

__version__ = "0.1.0"
