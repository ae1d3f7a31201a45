"""
Browser session management
"""

from .browser_manager import BrowserHandle, BrowserSessionManager, convert_cookies_to_playwright, is_tracker_request

__all__ = ['BrowserHandle', 'BrowserSessionManager', 'convert_cookies_to_playwright', 'is_tracker_request']
