from .base import BasePreset, PresetOptions, Result
from .gemini import GeminiPool

__all__ = [
    'BasePreset',
    'PresetOptions',
    'Result',
    'GeminiPool'
]
