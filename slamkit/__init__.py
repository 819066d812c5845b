"""Visual SLAM building blocks: Lie groups, curve fitting, RGB-D and dense
mapping, pose graph optimisation and a stereo odometry core."""

__version__ = "0.1.0"