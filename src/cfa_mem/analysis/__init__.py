"""Analysis module for comparing the two fits."""
from .comparator import ComparisonTable, compare, congruence
