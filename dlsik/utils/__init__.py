"""Numerical helpers: pseudo-inverses, SE3 twists, JIT warmup."""
