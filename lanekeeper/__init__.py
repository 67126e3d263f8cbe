'''Household bandwidth lanes and DNS filtering for a Linux router.'''

__version__ = '0.3.0'
