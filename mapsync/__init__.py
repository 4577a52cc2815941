"""
Marker clustering and view-synchronization engine.

This package provides:
- Feature store and GeoJSON normalisation
- Screen-space clustering with stable cluster identities
- Camera reframing to an externally driven filter
- Interaction gate and debounce slots on the Qt event loop
- Headless Web Mercator projector and a small CLI
"""
