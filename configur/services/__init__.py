"""
Services

- sync - settings fetch, cache, decryption and refresh
"""
