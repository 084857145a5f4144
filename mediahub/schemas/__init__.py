# Schemas package (re-export feature modules for stable imports)
from .common.common import *
from .media.image import *
