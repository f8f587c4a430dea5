"""
Configuration loading.
"""
