from setuptools import setup, find_packages

setup(
    name="ERPower",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "numpy",
        "pandas",
        "scipy",
        "joblib",
    ],
    extras_require={
        "progress": ["tqdm"],
        "test": ["pytest", "statsmodels"],
    },
    python_requires=">=3.8",
    author="Paweł Lenartowicz",
    description="ERP missing-data simulation: LME vs. repeated-measures ANOVA power analysis",
)
