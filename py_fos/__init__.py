"""
Voronoi acuteness analysis and growth simulation for 3D cell meshes.
"""

__version__ = "0.1.0"
