import argparse
import logging

import numpy as np


def main(argv=None):
    parser = argparse.ArgumentParser(description="Laser odometry: continuous-time lidar odometry for rotating lidars.")
    parser.add_argument("--input", type=str, required=True, help="Path to the recorded points (CSV: x,y,z,intensity,ring,tick,stamp).")
    parser.add_argument("--output_traj", type=str, required=True, help="Path to save the output trajectory (CSV: stamp, 3x4 pose).")
    parser.add_argument("--output_cloud", type=str, default=None, help="Path to save the last undistorted cloud (PLY format).")

    parser.add_argument("--n_ring", type=int, default=16, help="Number of lidar rings.")
    parser.add_argument("--max_ticks", type=int, default=36000, help="Ticks per revolution.")
    parser.add_argument("--n_window", type=int, default=1, help="Revolutions per optimization window.")
    parser.add_argument("--scan_period", type=float, default=0.1, help="Duration of one window in seconds.")
    parser.add_argument("--num_trajectory_states", type=int, default=3, help="Number of trajectory knots per window.")
    parser.add_argument("--n_edge", type=int, default=40, help="Edge features per ring per window.")
    parser.add_argument("--n_flat", type=int, default=100, help="Flat features per ring per window.")
    parser.add_argument("--opt_iters", type=int, default=25, help="Outer correspondence/solve iterations.")
    parser.add_argument("--max_inner_iters", type=int, default=100, help="Solver iterations per outer iteration.")
    parser.add_argument("--min_residuals", type=int, default=30, help="Residual blocks required for a solve.")
    parser.add_argument("--solver_threads", type=int, default=0, help="Solver threads, 0 for all cores.")
    parser.add_argument("--verbose", action="store_true", help="Log at debug level.")

    parser.add_argument("--profile", action="store_true", help="Enable cProfile for performance profiling.")

    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format="%(asctime)s %(name)s %(levelname)s: %(message)s")

    print("Laser Odometry CLI")
    print(f"Input points file: {args.input}")
    print(f"Output trajectory file: {args.output_traj}")
    if args.output_cloud:
        print(f"Output cloud PLY file: {args.output_cloud}")

    profiler = None
    if args.profile:
        import cProfile
        profiler = cProfile.Profile()
        print("\nPerformance profiling enabled. Running main logic under profiler...")
        profiler.enable()

    status = actual_main_operation(args)

    if args.profile and profiler:
        import pstats
        profiler.disable()
        print("\n--- Performance Profile ---")
        stats = pstats.Stats(profiler).sort_stats('cumulative')
        stats.print_stats(20)
    return status


def actual_main_operation(args):
    """Replays the recorded points through the odometry engine and saves the results."""
    from .config import LaserOdomParams
    from .io import PLYWriter, read_points_csv
    from .odometry import LaserOdom

    try:
        points = read_points_csv(args.input)
    except FileNotFoundError:
        print(f"\nError: Input file not found: {args.input}")
        return 1
    except ValueError as ve:
        print(f"\nError reading input points: {ve}")
        return 1
    print(f"Read {len(points)} points.")

    params = LaserOdomParams(
        n_ring=args.n_ring,
        max_ticks=args.max_ticks,
        n_window=args.n_window,
        scan_period=args.scan_period,
        num_trajectory_states=args.num_trajectory_states,
        n_edge=args.n_edge,
        n_flat=args.n_flat,
        opt_iters=args.opt_iters,
        max_inner_iters=args.max_inner_iters,
        min_residuals=args.min_residuals,
        solver_threads=args.solver_threads,
        output_trajectory=True,
        trajectory_path=args.output_traj,
    )
    # The trajectory writer appends, start from an empty file
    open(args.output_traj, 'w').close()

    latest = {}

    def keep_latest(output):
        latest['output'] = output

    try:
        with LaserOdom(params) as odom:
            odom.register_output_function(keep_latest)
            # consecutive rows sharing a tick and stamp form one packet
            keys = np.column_stack((points['tick'], points['stamp']))
            breaks = np.nonzero(np.any(np.diff(keys, axis=0) != 0, axis=1))[0] + 1
            for packet in np.split(points, breaks):
                if len(packet) == 0:
                    continue
                rows = zip(packet['x'], packet['y'], packet['z'], packet['intensity'], packet['ring'])
                odom.add_points(rows, int(packet['tick'][0]), float(packet['stamp'][0]))
            windows = odom.window_count
            print(f"Solved {windows} windows, initialized: {odom.initialized}")
    except ValueError as ve:
        print(f"\nError processing points: {ve}")
        return 1

    print(f"Trajectory saved to {args.output_traj} with {windows} poses.")
    if args.output_cloud:
        output = latest.get('output')
        if output is None:
            print("No solved window, cloud not saved.")
        else:
            cloud = output.undistorted_cloud
            PLYWriter(args.output_cloud).write(cloud[:, :3], cloud[:, 3])
            print(f"Cloud saved to {args.output_cloud} with {len(cloud)} points.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
