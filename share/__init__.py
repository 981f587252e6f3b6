"""
Sharing layer: QR rendering, password-protected links and URL packaging.
"""

__version__ = "1.0.0"
