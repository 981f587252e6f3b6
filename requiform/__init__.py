"""
RequiForm Share - compact clinical record codec and secure link sharing.

Wire Version: 1
"""

__version__ = "1.0.0"

# Envelope schema version stamped as the first element of every compact payload
WIRE_VERSION = 1

# Supported envelope versions (decoders fail closed on anything else)
SUPPORTED_VERSIONS = [
    1,
]

# Envelope type codes (second element of every compact payload)
TYPE_PATIENT = 1
TYPE_PHENOTYPE = 2
TYPE_PEDIGREE = 3
TYPE_COMPLETE = 4  # whole-record envelope; readers that only know 1-3 reject it

SUPPORTED_TYPES = [TYPE_PATIENT, TYPE_PHENOTYPE, TYPE_PEDIGREE, TYPE_COMPLETE]
