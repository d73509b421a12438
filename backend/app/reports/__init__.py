"""
reports — Crowd-submitted incident reports.
"""
