"""
Detail page validation and field extraction
"""

from .extraction import ExtractionPipeline

__all__ = ['ExtractionPipeline']
