# objslam

This package holds building blocks for the tracking stage of an object-aware
visual SLAM system. It is written in Python and uses numpy.

## Modules

### `objslam.epnp`

This module estimates the pose of a calibrated camera with EPnP.

- `Camera(fu, fv, uc, vc)` holds pinhole intrinsics. `Camera.project(points)` maps camera-frame points of shape (N, 3) to pixels of shape (N, 2).
- `estimate_pose(points3d, points2d, camera)` needs at least four correspondences. It returns a `PoseEstimate` with the world-to-camera `rotation`, the `translation` and the mean reprojection `error`.
- The individual steps are also public:
  - `choose_control_points`
  - `barycentric_coordinates`
  - `build_measurement_matrix`
  - `compute_l_6x10`
  - `compute_rho`
  - `find_betas_approx_1`, `find_betas_approx_2` and `find_betas_approx_3`
  - `gauss_newton`
  - `qr_solve`, a Householder least-squares solve that raises `numpy.linalg.LinAlgError` on a singular column
  - `reprojection_error`

### `objslam.pnp`

This module runs RANSAC around EPnP to relocalise a camera.

- `PnPSolver(correspondences, camera, n_matches=None, rng=None)` takes `Correspondence` values. Each one holds `point3d`, `point2d`, `sigma2` and `index`.
- `set_ransac_parameters(probability, min_inliers, max_iterations, min_set, epsilon, th2)` adjusts the thresholds to the number of correspondences. The defaults are 0.99, 8, 300, 4, 0.4 and 5.991.
- `iterate(n_iterations)` returns an `IterationResult`. Its `pose` is a 4x4 matrix, or None when no pose was accepted. It also carries `no_more`, an `inliers` mask indexed like the match list, and `n_inliers`.
- `refine()` and `check_inliers(rotation, translation)` are available as well.

### `objslam.objects`

`DetectedObject` is a detected object with a 3D `position`, a `class_id`, an `id` and a bounding box (`left`, `right`, `top`, `bottom`).

- `contains(x, y)` tests whether a pixel lies strictly inside the box.
- `distance_to(other)` gives the distance between the two centres.

### `objslam.matching`

This module holds the primitives that the matchers share:

- `KeyPoint` holds a pixel position, an orientation in degrees, a pyramid `octave` and a `class_id`.
- `descriptor_distance(a, b)` is the Hamming distance between binary descriptors of equal length.
- `compute_three_maxima(counts)`, `rotation_bin(angle1, angle2, length)` and `RotationHistogram` implement the rotation-consistency check. `RotationHistogram.rejected()` lists the matches that fall outside the dominant bins.
- `radius_by_viewing_cos(view_cos)` gives the search window size.
- `check_dist_epipolar_line(kp1, kp2, f12, sigma2)` is the epipolar distance test.
- The constants are `TH_HIGH` (100), `TH_LOW` (50) and `HISTO_LENGTH` (30).

### `objslam.bow`

This module matches features that share a vocabulary node. Each view is a `FeatureView` or a `TriangulationView`, and its `feature_vector` maps a node id to feature indices.

- `search_by_bow(source, target, nn_ratio, check_orientation)` returns the map point matched to each feature of `target`, or None.
- `search_by_bow_keyframes(view1, view2, nn_ratio, check_orientation)` matches the map points of two keyframes.
- `search_for_triangulation(view1, view2, f12, epipole, only_stereo, check_orientation)` pairs features that have no map point. It returns `(index1, index2)` pairs.

### `objslam.projection`

This module matches `Candidate` map points by projecting them into a `ProjectionTarget`. Matches are written into `target.map_points`, and each function returns the number of matches.

- `search_by_projection` handles local map tracking. It uses projections prepared beforehand and checks consistency with detected objects.
- `search_by_projection_motion` handles tracking under a motion model.
- `search_by_projection_relocalisation` handles relocalisation against a keyframe.
- `fuse` merges candidates into a keyframe. It returns `(number fused, replacements)`.
- `search_by_sim3` finds matches between two keyframes related by a similarity transform. Only matches found in both directions are kept.
- `best_match(descriptor, target, indices, skip)` and `ProjectionTarget.features_in_area` / `ProjectionTarget.project` are public helpers.

## What the package does not do

These functions work on data the caller provides:

- keypoints
- descriptors
- feature vectors
- map points and poses

The package does not extract ORB features and does not build a vocabulary. It does not keep a map or keyframe database. It has no bundle adjustment or pose-graph optimisation. It provides no command-line program.

## Installation

```
pip install .
```

## Example

```python
import numpy as np
from objslam.epnp import Camera, estimate_pose

camera = Camera(fu=500.0, fv=500.0, uc=320.0, vc=240.0)
points3d = np.random.default_rng(0).uniform(-1, 1, (20, 3)) + [0, 0, 5]
points2d = camera.project(points3d)
pose = estimate_pose(points3d, points2d, camera)
print(pose.rotation, pose.translation, pose.error)
```

## Running the tests

```
pip install .[test]
pytest
```