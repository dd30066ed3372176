"""secenvs Meta information.
   secenvs keeps per-project secrets encrypted at rest in a single
   line-oriented file, safe to share between concurrent processes.
"""
__title__ = 'secenvs'
__description__ = (
   'File-based encrypted secret store with locking, atomic writes '
   'and a hash-chained audit log.'
)
__version__ = '0.4.0'
__license__ = 'Apache-2.0'
