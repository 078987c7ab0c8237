__app_name__ = "ApexFlow"
__version__ = "0.3.0"
