"""
CarePro payment settlement and recurring billing service.
"""

__version__ = "1.0.0"
