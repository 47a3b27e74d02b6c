"""
Synthetic delay scenarios for model validation.

**Usage:**
```python
from simulation.simulator import DelayScenarioSimulator

sim = DelayScenarioSimulator({"Bus": 12, "Subway": 9, "Streetcar": 16}, noise_sd=3)
data = sim.generate(300, random_seed=853)
truth = sim.mode_offsets()   # {"Streetcar": 4.0, "Subway": -3.0}
```
"""

from simulation.simulator import DelayScenarioSimulator

__all__ = [
    "DelayScenarioSimulator",
]
