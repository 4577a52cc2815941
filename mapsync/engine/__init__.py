"""
Engine layer: clustering, view synchronizer, interaction gate, debounce
slots, filter sources and the ``MapEngine`` facade.
"""
