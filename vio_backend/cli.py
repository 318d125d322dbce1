"""
VIO Backend - Command Line Interface
"""

import json
import logging
from pathlib import Path
from typing import Optional

import numpy as np
import typer
from rich.console import Console
from rich.table import Table

from vio_backend.common.config import (
    BackendConfig, BackendModality, load_backend_config, save_config
)
from vio_backend.common.data_structures import Pose
from vio_backend.common.errors import InitializationFailed
from vio_backend.utils.math_utils import rotation_angle

app = typer.Typer(
    name="vio-backend",
    help="Incremental visual-inertial estimation backend CLI",
    add_completion=False,
)
console = Console()


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[logging.StreamHandler()]
    )


def _load_config(config: Optional[Path]) -> BackendConfig:
    if config is None:
        return BackendConfig()
    return load_backend_config(config)


def _online_initialization(backend_config, scenario, buffer, preintegration):
    """Run online initialization on the first keyframes; returns the result and the keyframe index it ends at."""
    from vio_backend.estimation.gtsam_engine import GtsamBundleAdjuster
    from vio_backend.estimation.online_initialization import OnlineInitializer

    initializer = OnlineInitializer(
        backend_config.initialization,
        backend_config.imu,
        pose_refiner=GtsamBundleAdjuster(backend_config)
    )
    previous_timestamp = None
    for vision_update in scenario.keyframes:
        summary = None
        if previous_timestamp is not None:
            summary = preintegration.preintegrate_from_buffer(
                buffer, previous_timestamp, vision_update.timestamp
            )
        initializer.add_keyframe(vision_update, summary)
        previous_timestamp = vision_update.timestamp
        if initializer.ready:
            return initializer.initialize(), len(initializer) - 1
    raise InitializationFailed(
        f"Scenario ended after {len(initializer)} keyframes, "
        f"{backend_config.initialization.num_alignment_keyframes} needed"
    )


@app.command("check-config")
def check_config(
    config: Optional[Path] = typer.Argument(
        None,
        help="Path to backend config YAML file (defaults if omitted)"
    ),
    write_defaults: Optional[Path] = typer.Option(
        None,
        "--write-defaults", "-w",
        help="Write the resolved configuration to this YAML file"
    ),
):
    """Validate a backend configuration and print its main parameters."""
    try:
        backend_config = _load_config(config)
    except Exception as e:
        console.print(f"[red]Invalid configuration: {e}[/red]")
        raise typer.Exit(1)

    table = Table(title="Backend Configuration")
    table.add_column("Section", style="cyan")
    table.add_column("Parameter", style="magenta")
    table.add_column("Value", style="green")

    for section, model in backend_config:
        for name, value in model.model_dump(mode='json').items():
            table.add_row(section, name, str(value))

    console.print(table)

    if write_defaults is not None:
        save_config(backend_config, write_defaults)
        console.print(f"[green]✓ Configuration written to {write_defaults}[/green]")


@app.command()
def simulate(
    config: Optional[Path] = typer.Option(
        None,
        "--config", "-c",
        help="Path to backend config YAML file"
    ),
    duration: float = typer.Option(
        4.0,
        "--duration", "-d",
        help="Scenario duration in seconds"
    ),
    modality: Optional[str] = typer.Option(
        None,
        "--modality", "-m",
        help="Backend modality override, e.g. structureless, projection"
    ),
    seed: Optional[int] = typer.Option(
        42,
        "--seed", "-s",
        help="Random seed for reproducibility"
    ),
    pixel_noise: float = typer.Option(
        0.0,
        "--pixel-noise",
        help="Pixel noise standard deviation"
    ),
    gyro_bias: float = typer.Option(
        0.0,
        "--gyro-bias",
        help="Gyroscope bias (rad/s) added to every axis of the synthetic IMU"
    ),
    online_init: bool = typer.Option(
        False,
        "--online-init",
        help="Estimate gravity, velocity and gyro bias from the first keyframes"
    ),
    output: Optional[Path] = typer.Option(
        None,
        "--output", "-o",
        help="Write estimate updates to this JSON file"
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose", "-v",
        help="Enable debug logging"
    ),
):
    """Run the backend with the iSAM2 engine on a synthetic wall scenario."""
    from vio_backend.estimation.estimation_driver import IncrementalEstimationDriver
    from vio_backend.estimation.gtsam_engine import GtsamIncrementalEngine
    from vio_backend.estimation.inertial_buffer import InertialBuffer
    from vio_backend.simulation.synthetic import SyntheticScenarioConfig, SyntheticScenarioGenerator

    _setup_logging(verbose)

    backend_config = _load_config(config)
    if modality is not None:
        try:
            backend_config.regularity.modality = BackendModality(modality)
        except ValueError:
            console.print(f"[red]Invalid modality: {modality}[/red]")
            raise typer.Exit(1)

    scenario_config = SyntheticScenarioConfig(
        duration=duration, seed=seed, pixel_noise=pixel_noise, gyroscope_bias=(gyro_bias,) * 3
    )
    if config is not None:
        scenario_config.camera = backend_config.camera
    scenario = SyntheticScenarioGenerator(scenario_config).generate()
    backend_config.camera = scenario.camera

    buffer = InertialBuffer()
    buffer.extend(scenario.imu_samples)

    driver = IncrementalEstimationDriver(GtsamIncrementalEngine(backend_config), backend_config)

    # Ground truth is compared in the frame the driver was anchored in
    first = 0
    origin = Pose()
    if online_init or backend_config.initialization.online_initialization:
        try:
            alignment, first = _online_initialization(
                backend_config, scenario, buffer, driver.preintegration
            )
        except InitializationFailed as e:
            console.print(f"[red]Online initialization failed: {e}[/red]")
            raise typer.Exit(1)
        driver.initialize_from_alignment(alignment)
        origin = Pose(rotation=alignment.world_R_b0).compose(scenario.ground_truth_poses[0].inverse())
        console.print(
            f"[green]✓ Initialized at keyframe {first}, gyro bias "
            f"{np.array2string(alignment.gyroscope_bias, precision=4)}[/green]"
        )
    else:
        driver.initialize(scenario.ground_truth_poses[0], scenario.ground_truth_velocities[0])

    table = Table(title="Keyframe Estimates")
    table.add_column("Keyframe", style="cyan")
    table.add_column("Position", style="magenta")
    table.add_column("Error (m)", style="yellow")
    table.add_column("Rot. error (deg)", style="yellow")
    table.add_column("Landmarks", style="green")
    table.add_column("Planes", style="green")

    updates = []
    previous_timestamp = None
    for k, vision_update in enumerate(scenario.keyframes[first:], start=first):
        summary = None
        if previous_timestamp is not None:
            summary = driver.preintegration.preintegrate_from_buffer(
                buffer, previous_timestamp, vision_update.timestamp
            )
        update = driver.step(vision_update, scenario.plane_regions[k], summary=summary)
        previous_timestamp = vision_update.timestamp
        updates.append(update)

        truth = origin.compose(scenario.ground_truth_poses[k])
        error = np.linalg.norm(update.pose.position - truth.position)
        rotation_error = np.degrees(rotation_angle(truth.rotation.T @ update.pose.rotation))
        table.add_row(
            str(update.keyframe_id),
            np.array2string(update.pose.position, precision=3),
            f"{error:.4f}",
            f"{rotation_error:.3f}",
            str(len(update.landmark_positions)),
            str(len(update.planes))
        )

    console.print(table)

    if output is not None:
        output.parent.mkdir(parents=True, exist_ok=True)
        with open(output, 'w') as f:
            json.dump([update.to_dict() for update in updates], f, indent=2)
        console.print(f"[green]✓ Estimates written to {output}[/green]")


def main():
    app()


if __name__ == "__main__":
    main()
