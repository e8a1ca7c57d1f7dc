"""Legacy export parsing."""
