"""Social, physical and LEX proximity to COVID-19 cases."""

__version__ = '0.1.0'
