"""Shared validators package for the application.

Available validators:
- password.py: Password strength validation
"""
