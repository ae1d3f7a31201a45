"""
Persistence for extracted records
"""

from .storage import JsonFileStorage, default_output_filename

__all__ = ['JsonFileStorage', 'default_output_filename']
