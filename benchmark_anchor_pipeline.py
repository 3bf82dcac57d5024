import time

from anchor.collision import resolve_placements
from anchor.candidates import default_candidates
from anchor.config import GPU_ENABLED, AnchorConfig
from anchor.pipeline import AnchorPipeline
from anchor.synthetic import random_blobs

# ---- Configuration ----
N_ITERATIONS = 50
HEIGHT = 1024
WIDTH = 1024
N_FEATURES = 200


def run_benchmark():
    backend_name = f"CuPy (GPU_ENABLED={GPU_ENABLED})" if GPU_ENABLED else f"NumPy/numba (GPU_ENABLED={GPU_ENABLED})"
    print("--- Starting Benchmark for the anchor pipeline ---")
    print(f"Using backend: {backend_name}")
    print(f"Number of iterations: {N_ITERATIONS}")
    print(f"Raster dimensions: {WIDTH}x{HEIGHT}, {N_FEATURES} random features per frame")

    pipeline = AnchorPipeline(AnchorConfig())

    # First call compiles the kernels
    warmup = random_blobs(WIDTH, HEIGHT, N_FEATURES, seed=12345)
    pipeline.run_frame(warmup)

    pass_durations = []
    declutter_durations = []
    for i in range(N_ITERATIONS):
        raster = random_blobs(WIDTH, HEIGHT, N_FEATURES, seed=i)
        candidates = default_candidates(raster.feature_counts())

        start_time = time.perf_counter()
        markers = pipeline.run_frame(raster)
        anchors = markers.positions()
        pass_time = time.perf_counter() - start_time

        start_time = time.perf_counter()
        decisions = resolve_placements(candidates, anchors)
        declutter_time = time.perf_counter() - start_time

        pass_durations.append(pass_time)
        declutter_durations.append(declutter_time)

        print_interval = max(1, N_ITERATIONS // 10)
        if (i + 1) % print_interval == 0 or N_ITERATIONS <= 10:
            print(f"  Iteration {i+1}/{N_ITERATIONS} done. {len(anchors)} anchors, {len(decisions)} labels. "
                  f"Passes: {pass_time:.6f}s, declutter: {declutter_time:.6f}s")

    if not pass_durations:
        print("No iterations were run.")
        return

    total_time = sum(pass_durations)
    print("\n--- Benchmark Results Summary ---")
    print(f"Backend: {backend_name}")
    print(f"Average GPU-pass time (incl. readback): {total_time / N_ITERATIONS:.6f} seconds")
    print(f"Min / max: {min(pass_durations):.6f} / {max(pass_durations):.6f} seconds")
    print(f"Average declutter time: {sum(declutter_durations) / N_ITERATIONS:.6f} seconds")
    print(f"Throughput: {N_ITERATIONS / total_time if total_time > 0 else float('inf'):.2f} frames/second")


if __name__ == "__main__":
    run_benchmark()
