# Author: Konrads Klints <konrads.klints@kpmg.co.uk>
from setuptools import setup

setup(name="adnest",
      version="1.0.0",
      description="Active Directory helper scripts: nested group membership, credential checks, GPO links and GPP local admins",
      author="Konrads Klints",
      author_email="konrads.klints@kpmg.co.uk",
      python_requires=">=3.9",
      py_modules=["adnest", "credcheck", "datasource", "gpolinks", "gppadmin", "ldapaccess", "membership"],
      install_requires=[
          "python-ldap",
          "dnspython>=2.0",
          "pydot",
          "impacket",
      ],
      extras_require={
          "test": ["pytest"],
      },
      entry_points={
          "console_scripts": [
              "adnest=adnest:main",
              "adcredcheck=credcheck:main",
              "gpolinks=gpolinks:main",
              "gppadmin=gppadmin:main",
          ],
      })
