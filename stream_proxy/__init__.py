"""
LLM stream proxy
"""
