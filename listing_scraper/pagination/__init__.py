from .strategy import PaginationStrategy

__all__ = ['PaginationStrategy']
