"""HIV-TB-Microsim: Monthly individual-based HIV/TB/comorbidity simulation.

A patient-level Monte Carlo model coupling:
  - Chronic comorbidity prevalence, incidence and staging
  - TB natural history (infection, activation, self-cure, relapse)
  - TB clinical management (diagnostics, treatment, prophylaxis)
  - Competing-risk mortality with cause attribution
  - HIV care engagement and CD4 monitoring
"""

__version__ = "0.1.0"
