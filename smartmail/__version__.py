"""
SmartMail - Version and metadata
"""

__version__ = "1.0.0"
__author__ = "SmartMail Contributors"
__license__ = "MIT"
__description__ = "AI-assisted Gmail triage with tracked, resumable batch jobs"
