# slamkit

Building blocks for visual SLAM in Python, NumPy and SciPy.

| Module | What it holds |
| --- | --- |
| `slamkit.lie` | `SO3` and `SE3` with `exp`/`log`, `hat`/`vee`, composition, inverse and `adjoint`; `hat`, `vee`, `angle_axis_to_matrix`, `quaternion_to_matrix`, `matrix_to_quaternion`, `euler_zyx`, `transform_between` |
| `slamkit.curve_fitting` | fitting `y = exp(a·x² + b·x + c)`: `generate_data`, `gauss_newton`, `levenberg_marquardt`, `FitResult` |
| `slamkit.trajectory` | `parse_trajectory`, `read_trajectory`, `absolute_trajectory_error` |
| `slamkit.rgbd` | `CameraIntrinsics`, `undistort_image`, `read_poses`, `depth_to_points`, `join_rgbd`, `stereo_point_cloud`, `statistical_outlier_removal`, `voxel_filter` |
| `slamkit.dense_mapping` | monocular dense depth: `epipolar_search`, `ncc`, `update_depth_filter`, `update`, `evaluate_depth`, `read_dataset` |
| `slamkit.pose_graph` | `PoseGraph`, `Edge`, `read_pose_graph`, `jr_inv` |
| `slamkit.geometry` | `triangulation`, `to_vec2`, the pinhole `Camera` |
| `slamkit.frame` | `Frame`, `Feature`, `MapPoint` |
| `slamkit.slam_map` | `Map`, a sliding window of active keyframes and landmarks |
| `slamkit.config` | `Config`, parameters from a YAML file |
| `slamkit.dataset` | `Dataset`, a KITTI-style stereo sequence reader |
| `slamkit.backend` | `Backend`, sliding-window bundle adjustment in a thread, and the projection errors and Jacobians it uses |

Conventions: SE(3) twists are ordered translation first, rotation last;
quaternions are passed as `(w, x, y, z)`; images are numpy arrays indexed
`[row, column]`.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Library use

Rotations and transforms:

```python
import numpy as np
from slamkit.lie import SE3, SO3, angle_axis_to_matrix

R = angle_axis_to_matrix(np.pi / 2, np.array([0.0, 0.0, 1.0]))
T = SE3(R, np.array([1.0, 0.0, 0.0]))

xi = T.log()
T_updated = SE3.exp(np.array([1e-4, 0, 0, 0, 0, 0])) * T
print(T_updated.matrix())
print(SO3(R).log())
```

Fitting a curve:

```python
from slamkit.curve_fitting import generate_data, gauss_newton

x_data, y_data = generate_data(100, 1.0, 2.0, 1.0, 1.0, 0)
result = gauss_newton(x_data, y_data, (2.0, -1.0, 5.0), 1.0, 100)
print(result.params, result.cost, result.iterations)
```

Triangulating a point from observations on the normalised image plane
(`triangulation` returns `None` when the solution is poorly determined):

```python
import numpy as np
from slamkit.geometry import triangulation
from slamkit.lie import SE3

poses = [SE3(), SE3(None, [-1.0, 0.0, 0.0])]
points = [np.array([0.0, 0.0, 1.0]), np.array([-0.2, 0.0, 1.0])]
print(triangulation(poses, points))   # about [0, 0, 5]
```

Optimising a pose graph:

```python
from slamkit.pose_graph import read_pose_graph

with open("sphere.g2o", encoding="utf-8") as stream:
    graph = read_pose_graph(stream)   # vertex 0 is held fixed
print(graph.total_error(), graph.optimize(30))
with open("result.g2o", "w", encoding="utf-8") as stream:
    graph.write(stream)
```

Running the backend on a map:

```python
from slamkit.backend import Backend
from slamkit.slam_map import Map

with Backend() as backend:            # the thread stops on exit
    backend.set_map(Map())
    backend.set_cameras(left_camera, right_camera)
    backend.update_map()              # request an optimisation
```

`Backend.optimize(keyframes, landmarks)` can also be called directly; it
returns the outlier and inlier counts and the final chi-square threshold.

## Commands

```
slamkit-curve-fitting [--method gauss-newton|levenberg-marquardt] [--points N] [--sigma S] [--seed N] [--iterations N]
slamkit-trajectory [GROUNDTRUTH] [ESTIMATED] [--single]
slamkit-dense-mapping DATASET [--output depth.png]
slamkit-pose-graph GRAPH [--output result.g2o] [--iterations 30]
```

- `slamkit-curve-fitting` generates noisy samples, prints each accepted step
  and the estimated parameters.
- `slamkit-trajectory` prints the RMSE between two trajectory files
  (`time tx ty tz qx qy qz qw` per line); with `--single` it only reports how
  many poses the first file holds.
- `slamkit-dense-mapping` estimates the depth of the first image of a
  sequence with known poses, prints the depth error after each image and
  saves the depth map, rounded and clipped to 0–255, as an 8-bit image.
- `slamkit-pose-graph` reads a `VERTEX_SE3:QUAT` / `EDGE_SE3:QUAT` graph,
  prints the total error before and after optimisation and writes the result.

## What the package does not do

The stereo odometry pieces (`Camera`, `Frame`, `Map`, `Config`, `Dataset`,
`Backend`) are building blocks only. There is no frontend that detects or
tracks features between images, no command that runs odometry over a whole
sequence, and no viewer: nothing is drawn on screen. There is no place
recognition or loop closure, and point clouds are returned as arrays rather
than saved to point-cloud or occupancy-map files.