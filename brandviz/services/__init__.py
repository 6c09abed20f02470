"""
Servicios de la aplicación - Casos de uso de BrandViz
"""
