from .config import LaserOdomParams, default_feature_definitions
from .odometry import LaserOdom
from .output import OdometryOutput

__all__ = ["LaserOdom", "LaserOdomParams", "OdometryOutput", "default_feature_definitions"]
