from .base import Relation, constraints_enabled, no_constraints
from .defaults import SupportsDefaultModels
from .many_to_many import ManyToMany
from .many_to_one import ManyToOne
from .one_to_many import OneToMany, OneToOne, OneToOneOrMany
from .pivot import InteractsWithPivotTable, Pivot
from .through import OneToManyThrough, OneToOneThrough

__all__ = [
    "InteractsWithPivotTable",
    "ManyToMany",
    "ManyToOne",
    "OneToMany",
    "OneToManyThrough",
    "OneToOne",
    "OneToOneOrMany",
    "OneToOneThrough",
    "Pivot",
    "Relation",
    "SupportsDefaultModels",
    "constraints_enabled",
    "no_constraints",
]
