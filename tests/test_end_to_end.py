import subprocess
import sys

import pytest
import numpy as np

from conftest import SCAN_PERIOD, room_revolution


def write_room_csv(filepath, n_revolutions):
    """Writes n_revolutions of the static room scan as a point CSV with a header."""
    with open(filepath, 'w') as f:
        f.write("x,y,z,intensity,ring,tick,stamp\n")
        for rev in range(n_revolutions):
            for rows, tick, stamp in room_revolution(start_stamp=rev * SCAN_PERIOD):
                for x, y, z, intensity, ring in rows:
                    f.write(f"{x!r},{y!r},{z!r},{intensity!r},{ring},{tick},{stamp!r}\n")
    return filepath


@pytest.fixture
def room_csv(tmp_path):
    return write_room_csv(tmp_path / "room.csv", 4)

ROOM_ARGS = ["--n_ring", "16", "--n_edge", "12", "--n_flat", "24", "--min_residuals", "10",
             "--opt_iters", "5", "--max_inner_iters", "20", "--solver_threads", "1"]

def run_cli_command(args_list):
    """Helper to run the CLI script via subprocess."""
    cmd = [sys.executable, "-m", "laser_odometry.cli"] + args_list
    return subprocess.run(cmd, capture_output=True, text=True, check=False)


def test_cli_runs_on_room_scan(room_csv, tmp_path):
    output_traj = tmp_path / "traj.txt"
    output_cloud = tmp_path / "cloud.ply"
    result = run_cli_command(["--input", str(room_csv), "--output_traj", str(output_traj),
                              "--output_cloud", str(output_cloud)] + ROOM_ARGS)
    assert result.returncode == 0, f"CLI script failed with error: {result.stderr}"
    assert "Solved 1 windows" in result.stdout

    with open(output_traj, 'r') as f:
        traj_lines = f.readlines()
    assert len(traj_lines) == 1
    parts = [float(v) for v in traj_lines[0].strip().split(",")]
    assert len(parts) == 13
    pose = np.array(parts[1:]).reshape(3, 4)
    assert np.allclose(pose, np.eye(4)[:3], atol=1e-2)

    with open(output_cloud, 'r') as f:
        ply_header = [next(f) for _ in range(7)]
    assert ply_header[0].strip() == "ply"
    assert ply_header[2].strip() == "element vertex 5760"
    assert ply_header[6].strip() == "property float intensity"

def test_cli_truncates_previous_trajectory(room_csv, tmp_path):
    output_traj = tmp_path / "traj.txt"
    output_traj.write_text("stale\n")
    result = run_cli_command(["--input", str(room_csv), "--output_traj", str(output_traj)] + ROOM_ARGS)
    assert result.returncode == 0, f"CLI script failed with error: {result.stderr}"
    assert "stale" not in output_traj.read_text()

def test_cli_without_solved_window(tmp_path):
    points = write_room_csv(tmp_path / "short.csv", 2)
    output_traj = tmp_path / "traj.txt"
    output_cloud = tmp_path / "cloud.ply"
    result = run_cli_command(["--input", str(points), "--output_traj", str(output_traj),
                              "--output_cloud", str(output_cloud)] + ROOM_ARGS)
    assert result.returncode == 0, f"CLI script failed with error: {result.stderr}"
    assert "No solved window, cloud not saved." in result.stdout
    assert output_traj.read_text() == ""
    assert not output_cloud.exists()

def test_cli_missing_input(tmp_path):
    result = run_cli_command(["--input", str(tmp_path / "missing.csv"),
                              "--output_traj", str(tmp_path / "traj.txt")])
    assert result.returncode == 1
    assert "Error: Input file not found" in result.stdout

def test_cli_profiling_flag(room_csv, tmp_path):
    result = run_cli_command(["--input", str(room_csv), "--output_traj", str(tmp_path / "traj.txt"),
                              "--profile"] + ROOM_ARGS)
    assert result.returncode == 0, f"CLI script with --profile failed: {result.stderr}"
    assert "Performance profiling enabled" in result.stdout
    assert "--- Performance Profile ---" in result.stdout
    assert "ncalls" in result.stdout
