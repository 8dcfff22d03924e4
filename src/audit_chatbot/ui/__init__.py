"""
Streamlit chat surface.
"""
