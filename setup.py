from setuptools import setup, find_packages

setup(
    name="mito_segmentation",
    version="0.1",
    packages=find_packages(exclude=['tests', 'tests.*']),
    py_modules=['run_segmentation'],
    install_requires=[
        'numpy',
        'SimpleITK',
        'scipy',
        'tqdm',
        'scikit-image',
        'vtk',
        'networkx'
    ],
    extras_require={
        'test': ['pytest']
    },
)
