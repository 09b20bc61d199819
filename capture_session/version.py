"""Capture Session Meta information.
   Capture Session binds operator sessions to short-lived, encrypted
   two-factor captures that are destroyed with the session.
"""
__title__ = 'capture_session'
__description__ = (
   'Capture Session binds operator sessions to short-lived, encrypted '
   'two-factor captures that are destroyed with the session.'
)
__version__ = '0.1.0'
__copyright__ = 'Copyright (c) 2026 Capture Session contributors'
__author__ = 'Capture Session contributors'
__license__ = 'Apache-2.0'
