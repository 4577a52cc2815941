"""
Geographic data model: features, the feature store, bounds and the
geometry projector.
"""
