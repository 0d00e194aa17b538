"""Multiview volume fusion: blend weights, portion-parallel combination and memory planning."""

__version__ = '0.1.0'
