"""
GenoFlow - variant annotation pipeline engine.
"""

__version__ = "1.0.0"
