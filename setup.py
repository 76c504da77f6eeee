from setuptools import setup
import io


with io.open('README.md', encoding='utf-8') as f:
    long_description = f.read()

with io.open('requirements.txt', encoding='utf-8') as f:
    requirements = [r for r in f.read().split('\n') if len(r)]


setup(name='pgdb',
      version='0.1.0',
      description='Ephemeral postgres instances and fixture databases for tests',
      long_description=long_description,
      long_description_content_type='text/markdown',
      license='MIT',
      packages=['pgdb'],
      python_requires='>=3.8',
      install_requires=requirements,
      extras_require={
          'test': ['pytest'],
      },
      zip_safe=True)
