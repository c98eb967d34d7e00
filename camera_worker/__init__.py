"""
RTC camera worker: one face detection pipeline per camera, managed over HTTP.
"""

__version__ = "1.0.0"
