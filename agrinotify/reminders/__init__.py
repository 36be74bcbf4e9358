"""
Task reminders, push endpoint registry and location-based alert broadcasts
"""
