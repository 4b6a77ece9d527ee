"""
Chat client: sessions, local storage, transport and CLI.
"""
