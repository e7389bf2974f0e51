"""This module specifies the current pgfailover version.

:var __version__: the current pgfailover version.
"""
__version__ = '1.0.0'
