class EngineError(Exception):
    """Base class for reminder engine errors"""
