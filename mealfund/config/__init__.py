"""
Configuration package for the meal settlement service.
"""

from mealfund.config.settings import Settings, get_settings, settings

__all__ = ['settings', 'get_settings', 'Settings']
