"""Model definitions: covariance structure and hierarchical log density."""
from .covariance_structure import OneFactorStructure, implied_covariance, degrees_of_freedom
from .hierarchical import HierarchicalModel, ParameterLayout
