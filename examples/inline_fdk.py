import time

import torch

from conefdk import circular_geometry, constant_image, reconstruct, run_inline, ReconstructionConfig
from conefdk.config import InlineConfig, VolumeConfig
from conefdk.phantom import project_shepp_logan


def main():
    hardware = 'cuda' if torch.cuda.is_available() else 'cpu'

    geometry = circular_geometry(120, sid=600.0, sdd=1200.0)
    detector = constant_image((128, 128), (4.0, 4.0))
    projections = project_shepp_logan(geometry, detector)
    slices = [projections.slice(i) for i in range(len(geometry))]

    config = ReconstructionConfig(
        volume=VolumeConfig(size=[64, 64, 64], spacing=[4.0, 4.0, 4.0]),
        inline=InlineConfig(acquisition_delay=0.05),
        hardware=hardware,
    )

    # Mock acquisition: one projection every 50 ms, reconstructed on the fly
    start = time.perf_counter()
    streamed = run_inline(geometry, slices, config)
    print(f"Inline reconstruction done {time.perf_counter() - start:.2f} s after the scan started")

    batch = reconstruct(geometry, projections, config)
    max_diff = (streamed.data - batch.data).abs().max().item()
    print("Max difference to batch reconstruction:", max_diff)


if __name__ == "__main__":
    main()
