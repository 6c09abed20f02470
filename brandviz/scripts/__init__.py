"""
Scripts de mantenimiento
"""
