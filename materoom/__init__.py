"""MateRoom chat backend and client sync library."""
