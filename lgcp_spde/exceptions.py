"""Custom exceptions for lgcp_spde package"""

class LgcpSpdeError(Exception):
    """Base exception for lgcp_spde package"""
    pass

class CoordsError(LgcpSpdeError):
    """Raised for coordinate processing errors"""
    pass

class MeshError(LgcpSpdeError):
    """Raised for mesh generation errors"""
    pass

class MatrixError(LgcpSpdeError):
    """Raised for FEM and projector matrix errors"""
    pass

class ModelError(LgcpSpdeError):
    """Raised for invalid model components or formulas"""
    pass

class ConvergenceError(LgcpSpdeError):
    """Raised when the Newton search for the latent mode fails"""
    pass

class ConditioningError(LgcpSpdeError):
    """Raised when numerical conditioning problems occur with precision matrix Q"""
    pass
