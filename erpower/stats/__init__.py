"""Statistical models, marginal means and data generation modules."""

from . import anova as anova
from . import design as design
from . import emmeans as emmeans
from . import lme_solver as lme_solver
from . import mixed_models as mixed_models
from . import data_generation as data_generation
