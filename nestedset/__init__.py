"""
django-nestedset

Nested Sets trees stored in a single database table, with bulk range updates
for every structural change.
"""

__version__ = "1.0.0"
