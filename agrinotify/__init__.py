"""
AgriNotify Backend Application Package

Scheduled task reminders and weather/pest alert dispatch for the farming app.
"""
