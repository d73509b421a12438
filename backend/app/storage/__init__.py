"""
storage — Entity persistence behind a load / save / query interface.
"""
