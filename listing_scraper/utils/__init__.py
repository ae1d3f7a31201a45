"""
Anti-detection, human behaviour and URL helpers
"""
