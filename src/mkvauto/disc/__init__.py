"""Optical disc handling.

Drive polling, the makemkvcon output parser, title selection and the
MakeMKV rip supervisor.
"""
