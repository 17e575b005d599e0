"""
Traffic Deaths Regression Report
================================

Linear-regression models of traffic deaths in Brazil at national, regional
and state level, from PRF highway accidents, RENAVAM fleet, IBGE GDP and
DataSUS death records.

Modules:
    - data_loader: Configuration, archive download and source ingestion
    - aggregation: Temporal aggregation and joins on (period, area)
    - eda: Exploratory plots of the observation table
    - preprocessing: Regression dataset and per-area train/test split
    - model: OLS models, one per geographic partition
    - evaluation: RMSE, MAE, R² and diagnostic plots
    - prediction: Prediction records with interval bounds
    - report: HTML report rendering
"""

__version__ = "1.0.0"
__author__ = "Traffic Deaths Report Team"
