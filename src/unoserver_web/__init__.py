"""
unoserver-web package.

A FastAPI application that converts uploaded documents with a pool of
LibreOffice `unoserver` listeners. The pool lives in `unoserver_web.conversion`.
"""

__all__ = ["__version__"]

__version__ = "0.1.0"
