"""
spatial — Geometry for geofenced targeting.

Sub-modules:
    geo_math  — Haversine distance, containment tests, bounding boxes
    areas     — Circle / polygon target areas
"""
