"""
healthrelay HTTP API
"""
