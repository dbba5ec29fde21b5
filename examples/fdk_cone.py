import math

import torch

from conefdk import circular_geometry, constant_image, reconstruct, ReconstructionConfig
from conefdk.config import RampConfig, VolumeConfig
from conefdk.phantom import draw_shepp_logan, project_shepp_logan


def main():
    hardware = 'cuda' if torch.cuda.is_available() else 'cpu'

    num_views = 360
    source_distance = 1200.0
    isocenter_distance = 600.0
    geometry = circular_geometry(num_views, sid=isocenter_distance, sdd=source_distance)

    # Analytic projections of the phantom, no discretisation of the object
    detector = constant_image((256, 256), (2.0, 2.0))
    projections = project_shepp_logan(geometry, detector)

    config = ReconstructionConfig(
        volume=VolumeConfig(size=[128, 128, 128], spacing=[2.0, 2.0, 2.0]),
        ramp=RampConfig(hann_cut=0.8),
        hardware=hardware,
    )
    reconstruction = reconstruct(geometry, projections, config)

    phantom = draw_shepp_logan(constant_image((128, 128, 128), (2.0, 2.0, 2.0)))
    diff = reconstruction.data.cpu() - phantom.data
    mse = torch.mean(diff ** 2).item()

    print("Cone Beam FDK Example:")
    print("MSE:", mse)
    print("PSNR (peak 2):", 10.0 * math.log10(4.0 / mse))
    print("Reconstruction:", reconstruction)

    reconstruction_cpu = reconstruction.data.cpu().numpy()
    phantom_cpu = phantom.data.numpy()

    print("Phantom data range:", phantom_cpu.min(), phantom_cpu.max())
    print("Reco data range:", reconstruction_cpu.min(), reconstruction_cpu.max())


if __name__ == "__main__":
    main()
