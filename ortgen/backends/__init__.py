from .common import GraphHandle, TensorScope
