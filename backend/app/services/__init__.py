"""
services — Facade exposing the engine operations to collaborators.
"""
