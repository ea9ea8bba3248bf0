"""
2D LGCP walkthrough: simulate a point pattern with a covariate effect,
build a mesh, fit Intercept + covariate + SPDE field, predict the intensity
surface and estimate abundance in the whole window and in a sub-region.
"""

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np

from lgcp_spde import (
    Covariate, FitOptions, GridCovariate, Intercept, LGCPModel, SPDEField, SPDEMesh,
    estimate_abundance, fit_lgcp, integration_points, pixels, predict, rectangle,
    simulate_lgcp_2d,
)
from lgcp_spde.visualization import (plot_abundance, plot_intensity, plot_mesh,
                                     plot_posterior_density)


def main():
    domain = rectangle(0, 0, 20, 10)

    # Elevation-like raster covariate
    gx = np.linspace(0, 20, 81)
    gy = np.linspace(0, 10, 41)
    X, Y = np.meshgrid(gx, gy, indexing='ij')
    elevation = GridCovariate(gx, gy, np.sin(X / 4.0) + 0.5 * np.cos(Y / 3.0))

    # Simulation mesh covering the window
    sim_mesh = SPDEMesh(np.array([[0, 0], [20, 0], [20, 10], [0, 10]], dtype=float))
    sim_mesh.create_mesh(boundary=domain, max_edge=(0.7, 2.0), offset=(0.0, 3.0), verbose=False)
    sim = simulate_lgcp_2d(sim_mesh, domain, range_=4.0, sigma=0.8, intercept=0.0,
                           covariate=elevation, beta=0.7, seed=42)
    points = sim['points']
    print(f"Simulated {len(points)} points")

    # Mesh for the model
    mesh = SPDEMesh(points)
    mesh.create_mesh(boundary=domain, max_edge=(1.0, 3.0), offset=(0.0, 4.0))

    field = SPDEField("field", mesh, alpha=2, prior_range=(2.0, 0.5), prior_sigma=(1.0, 0.1))
    model = LGCPModel(
        [Intercept(), Covariate("elevation", elevation), field],
        formula="coordinates ~ Intercept + elevation + field",
    )

    ips = integration_points(mesh, domain)
    result = fit_lgcp(model, points, ips, FitOptions(strategy="grid"))
    print(result.summary())

    grid = pixels(mesh, domain, nx=120, ny=60)
    intensity = predict(result, grid.locations, what="intensity", n_samples=500, seed=1)
    spatial = predict(result, grid.locations, what="field", n_samples=500, seed=1)

    total = estimate_abundance(result, n_samples=2000, seed=2)
    west = estimate_abundance(result, ips=integration_points(mesh, rectangle(0, 0, 10, 10)),
                              n_samples=2000, seed=2)
    print(f"Abundance: mean {total['N']['mean']:.1f}, 95% interval "
          f"[{total['N']['q0.025']}, {total['N']['q0.975']}], observed {len(points)}")
    print(f"Western half: mean {west['N']['mean']:.1f}, "
          f"observed {int(np.sum(points[:, 0] < 10))}")

    fig, axes = plt.subplots(2, 2, figsize=(14, 9))
    plot_mesh(mesh, points, domain, ax=axes[0, 0])
    plot_intensity(grid, intensity['mean'], points=points, ax=axes[0, 1])
    plot_intensity(grid, spatial['sd'], title="Posterior sd of the field", ax=axes[1, 0])
    plot_abundance(total, ax=axes[1, 1])
    fig.tight_layout()
    fig.savefig("lgcp_2d.png", dpi=120)

    plot_posterior_density(result).savefig("lgcp_2d_posteriors.png", dpi=120)


if __name__ == "__main__":
    main()
