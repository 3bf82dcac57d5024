import os

# Run every test on the NumPy/numba CPU path, even on a CUDA machine
os.environ.setdefault("ANCHORGEN_FORCE_NUMPY", "1")
