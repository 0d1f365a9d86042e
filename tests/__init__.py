"""Configures NumPy so that it raises all warnings except for underflow as exceptions."""

import numpy as np


np.seterr(all='raise', under='ignore')
